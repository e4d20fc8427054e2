from typing import Optional, Dict, Any, List

CHECKLISTS: Dict[str, List[str]] = {
    "Departure": [
        "Verificar estado físico del control",
        "Verificar estado físico de la aeronave",
        "Verificar hélices",
        "Verificar motores",
        "Verificar baterías cargadas",
        "Verificar tablet/celular cargado",
        "Verificar cables de conexión",
        "Verificar zona de despegue segura",
    ],
    "Assembly": [
        "Desplegar brazos de la aeronave",
        "Asegurar mecanismos de bloqueo",
        "Instalar hélices correctamente",
        "Instalar batería (sin conectar)",
        "Instalar cámara/payload",
        "Retirar protectores de cámara",
    ],
    "PreFlight": [
        "Encender control remoto",
        "Encender aeronave",
        "Verificar conexión RC-Aeronave",
        "Verificar señal GPS",
        "Calibrar brújula si es necesario",
        "Verificar telemetría en app",
    ],
    "PostFlight": [
        "Apagar aeronave",
        "Apagar control remoto",
        "Inspeccionar motores por sobrecalentamiento",
        "Inspeccionar hélices",
        "Inspeccionar batería (hinchazón/daño)",
        "Retirar batería y guardar",
        "Reporte de vuelo correctamente guardado en Bitácora",
    ],
}

# Destino al completar cada etapa
NEXT_STEP = {
    "Departure": "Assembly",
    "Assembly": "PreFlight",
    "PreFlight": "PreFlightForm",
    "PostFlight": "Dashboard",
}


def checklist(stage: str, flight: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Ítems de una etapa; en PostFlight el último se marca si el vuelo ya tiene reporte."""
    if stage not in CHECKLISTS:
        raise KeyError(stage)
    items = [{"text": t, "checked": False} for t in CHECKLISTS[stage]]
    if stage == "PostFlight" and flight and flight.get("pdf_path"):
        items[-1]["checked"] = True
    return {"stage": stage, "items": items, "next": NEXT_STEP[stage]}
