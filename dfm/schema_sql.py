SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS aircraft (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    code TEXT NOT NULL UNIQUE,
    part_num TEXT,
    serial_num TEXT,
    motors TEXT NOT NULL,
    batteries_main TEXT NOT NULL,
    batteries_spare TEXT NOT NULL,
    cameras TEXT NOT NULL,
    total_hours INTEGER NOT NULL DEFAULT 0 CHECK (total_hours >= 0),
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS owners (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    id_type TEXT NOT NULL CHECK (id_type IN ('CC','NIT')),
    id_num TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pilots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    cc TEXT NOT NULL UNIQUE,
    license_num TEXT NOT NULL,
    license_type TEXT NOT NULL,
    license_expiry TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS flights (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL CHECK (type IN ('Operativo','Ensayo')),
    status TEXT NOT NULL CHECK (status IN ('Programado','EnCurso','Finalizado','Abortado')),
    date TEXT NOT NULL,
    start_time TEXT,
    end_time TEXT,
    duration INTEGER DEFAULT 0,
    crew TEXT NOT NULL,
    equipment TEXT NOT NULL,
    prevuelo TEXT,
    postvuelo TEXT,
    cronometro TEXT,
    carga TEXT,
    fases TEXT,
    signatures TEXT,
    pdf_path TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS data_ledger (
    id INTEGER PRIMARY KEY,
    ts TEXT NOT NULL DEFAULT (datetime('now')),
    table_name TEXT NOT NULL,
    action TEXT NOT NULL,      -- INSERT / UPDATE / START / FINISH / ABORT ...
    row_id INTEGER,
    details TEXT
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_flights_status ON flights(status);
CREATE INDEX IF NOT EXISTS idx_flights_type ON flights(type);
CREATE INDEX IF NOT EXISTS idx_flights_date ON flights(date);
CREATE INDEX IF NOT EXISTS idx_ledger_row ON data_ledger(table_name, row_id);

-- Append-only guards
CREATE TRIGGER IF NOT EXISTS forbid_delete_flights
BEFORE DELETE ON flights
BEGIN
  SELECT RAISE(ABORT, 'DELETE prohibido: append-only (flights)');
END;
CREATE TRIGGER IF NOT EXISTS forbid_delete_data_ledger
BEFORE DELETE ON data_ledger
BEGIN
  SELECT RAISE(ABORT, 'DELETE prohibido: append-only (data_ledger)');
END;
'''
