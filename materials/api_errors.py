import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from materials.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    InventoryError,
    InventoryValidationError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    InsufficientStockError: status.HTTP_409_CONFLICT,
    InventoryValidationError: status.HTTP_400_BAD_REQUEST,
}

DRF_CODES = {
    status.HTTP_400_BAD_REQUEST: "VALIDATION_ERROR",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
}


def error_status(exc: InventoryError) -> int:
    for clase, codigo in STATUS_BY_ERROR.items():
        if isinstance(exc, clase):
            return codigo
    return status.HTTP_400_BAD_REQUEST


def inventory_exception_handler(exc, context):
    """
    Traduce los errores de dominio al sobre {"success": false, "error": {...}}
    y aplica el mismo sobre a los errores propios de DRF (validación, auth, 404).
    """
    if isinstance(exc, InventoryError):
        codigo = error_status(exc)
        logger.warning("%s en %s: %s", exc.code, context.get("view").__class__.__name__, exc.message)
        return Response({"success": False, "error": exc.to_dict()}, status=codigo)

    response = exception_handler(exc, context)
    if response is None:
        return None

    detalle = response.data
    if isinstance(detalle, dict) and set(detalle) == {"detail"}:
        error = {"code": DRF_CODES.get(response.status_code, "ERROR"), "message": str(detalle["detail"])}
    else:
        error = {
            "code": DRF_CODES.get(response.status_code, "ERROR"),
            "message": "Datos inválidos.",
            "fields": detalle,
        }
    response.data = {"success": False, "error": error}
    return response
