# lending/core/errors.py
from typing import Any, Dict, List, Optional


class LendingError(Exception):
    """
    Error base del motor de préstamos/reservas.

    Cada subclase lleva un `kind` que el cliente puede discriminar y el
    status HTTP con el que se traduce en la API.
    """

    kind = "error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "kind": self.kind,
            "details": self.details,
        }


class InvalidRequestError(LendingError):
    """Entrada mal formada o incompleta (fechas ausentes, fin <= inicio...)."""

    kind = "validation"
    status_code = 400


class NotFoundError(LendingError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} not found",
            details={"resource": resource, "id": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(LendingError):
    """
    El periodo pedido se solapa con préstamos o reservas existentes.

    Siempre lleva la lista completa de registros en conflicto para que
    el cliente pueda navegar hasta ellos.
    """

    kind = "conflict"
    status_code = 409

    def __init__(
        self,
        message: str,
        conflicting_loans: Optional[List[Any]] = None,
        conflicting_reservations: Optional[List[Any]] = None,
    ):
        self.conflicting_loans = list(conflicting_loans or [])
        self.conflicting_reservations = list(conflicting_reservations or [])
        super().__init__(
            message,
            details={
                "conflicting_loans": [c.to_dict() for c in self.conflicting_loans],
                "conflicting_reservations": [
                    c.to_dict() for c in self.conflicting_reservations
                ],
            },
        )

    @property
    def conflicts(self) -> List[Any]:
        return self.conflicting_loans + self.conflicting_reservations


class AuthorizationError(LendingError):
    kind = "authorization"
    status_code = 403


class InconsistencyWarning(Warning):
    """
    Fallo no fatal al reconciliar el estado de un item tras una operación
    que sí se completó. Nunca se lanza: se loguea y se devuelve al cliente.
    """
