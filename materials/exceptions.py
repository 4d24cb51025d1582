from decimal import Decimal


class InventoryError(Exception):
    """Error de dominio del ledger de insumos y de las conversiones."""

    code = "INVENTORY_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(InventoryError):
    code = "NOT_FOUND"


class InvalidStateError(InventoryError):
    """Operación fuera del estado permitido del flujo (ej: editar una conversión aprobada)."""

    code = "INVALID_STATE"


class InventoryValidationError(InventoryError):
    code = "VALIDATION_ERROR"


class InsufficientStockError(InventoryError):
    """
    La cantidad pedida supera lo disponible.
    Lleva el recurso escaso, lo solicitado y lo disponible para que la capa
    HTTP pueda mostrar el faltante exacto.
    """

    code = "INSUFFICIENT_STOCK"

    def __init__(self, *, resource: str, requested, available, message: str = ""):
        self.resource = resource
        self.requested = Decimal(str(requested))
        self.available = Decimal(str(available))
        if not message:
            message = (
                f"Stock insuficiente de {resource}. "
                f"Disponible: {self.available}, Solicitado: {self.requested}"
            )
        super().__init__(message)

    @property
    def shortfall(self) -> Decimal:
        return max(self.requested - self.available, Decimal("0"))

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "resource": self.resource,
                "requested": str(self.requested),
                "available": str(self.available),
                "shortfall": str(self.shortfall),
            }
        )
        return data
