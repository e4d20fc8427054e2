"""
Excepciones de DFM.

Cada error lleva un mensaje para el operador, un código estable y detalles
opcionales; la capa HTTP los convierte en una alerta de un solo uso.
"""

from typing import Optional, Dict, Any


class DFMError(Exception):
    """Error base de la aplicación."""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "DFM_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class FormValidationError(DFMError):
    """Datos de formulario inválidos; se reportan en línea, nunca es fatal."""

    status_code = 400

    def __init__(
        self,
        message: str,
        field: str = None,
        details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(message=message, code="VALIDATION_ERROR", details=error_details)


class NotFoundError(DFMError):
    status_code = 404

    def __init__(self, message: str, code: str = "NOT_FOUND", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code=code, details=details)


class FlightNotFoundError(NotFoundError):
    def __init__(self, flight_id: int = None):
        super().__init__(
            message=f"Vuelo no encontrado: {flight_id}",
            code="FLIGHT_NOT_FOUND",
            details={"flight_id": flight_id},
        )


class AircraftNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__(message="No hay aeronave registrada", code="AIRCRAFT_NOT_FOUND")


class FlightStateError(DFMError):
    """Transición no permitida desde el estado actual del vuelo."""

    status_code = 409

    def __init__(
        self,
        message: str,
        current_status: str = None,
        details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        if current_status:
            error_details["current_status"] = current_status
        super().__init__(message=message, code="INVALID_FLIGHT_STATE", details=error_details)


class PersistenceError(DFMError):
    """Fallo de lectura/escritura en la base local; el estado queda sin cambios."""

    def __init__(self, message: str = "Error al guardar en la base de datos", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="PERSISTENCE_ERROR", details=details)


class ReportError(DFMError):
    """No se pudo generar o ubicar el reporte PDF."""

    def __init__(self, message: str = "No se pudo generar el reporte", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="REPORT_ERROR", details=details)
