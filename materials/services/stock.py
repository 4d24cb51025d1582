# materials/services/stock.py

import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import F, Sum
from django.db.models.functions import Coalesce

from materials.exceptions import InsufficientStockError, InventoryValidationError, NotFoundError
from materials.models import (
    Input,
    InputBatch,
    InputVariant,
    InputVariantMovement,
    MovementType,
    ProductVariant,
    ProductVariantMovement,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def actor_fields(user) -> dict:
    """
    Campos de auditoría (user_id, user_name) a partir del usuario autenticado.
    Acepta None o usuarios anónimos.
    """
    if user is None or not getattr(user, "is_authenticated", False):
        return {"user_id": None, "user_name": ""}
    nombre = ""
    if hasattr(user, "get_full_name"):
        nombre = user.get_full_name() or ""
    return {"user_id": user.pk, "user_name": nombre or user.get_username()}


@transaction.atomic
def recalculate_input_stock(input_id: int) -> Input:
    """
    Recalcula Input.current_stock:
        - Si el insumo tiene lotes: suma de current_quantity de los lotes activos.
        - Si nunca tuvo lotes: suma del stock de sus variantes activas.

    Es idempotente y es el único camino que escribe Input.current_stock.
    """
    try:
        material = Input.objects.select_for_update().get(pk=input_id)
    except Input.DoesNotExist:
        raise NotFoundError("Insumo no encontrado.")

    if InputBatch.objects.filter(input_id=input_id).exists():
        total = InputBatch.objects.filter(input_id=input_id, is_active=True).aggregate(
            total=Coalesce(Sum("current_quantity"), ZERO)
        )["total"]
    else:
        total = InputVariant.objects.filter(input_id=input_id, is_active=True).aggregate(
            total=Coalesce(Sum("current_stock"), ZERO)
        )["total"]

    material.current_stock = total or ZERO
    material.save(update_fields=["current_stock", "updated_at"])
    return material


@transaction.atomic
def recalculate_input_variant_stock(input_variant_id: int) -> InputVariant:
    """
    Reconstruye el stock de una variante de insumo a partir de su log de
    movimientos (new_stock del último movimiento, 0 si no tiene).
    """
    try:
        variante = InputVariant.objects.select_for_update().get(pk=input_variant_id)
    except InputVariant.DoesNotExist:
        raise NotFoundError("Variante de insumo no encontrada.")

    ultimo = (
        InputVariantMovement.objects.filter(input_variant=variante)
        .order_by("-id")
        .first()
    )
    variante.current_stock = ultimo.new_stock if ultimo else ZERO
    variante.save(update_fields=["current_stock", "updated_at"])
    recalculate_input_stock(variante.input_id)
    return variante


def recalculate_stock(entity):
    """
    Punto único del agregador de stock, parametrizado por tipo de entidad.
    """
    if isinstance(entity, Input):
        return recalculate_input_stock(entity.pk)
    if isinstance(entity, InputVariant):
        return recalculate_input_variant_stock(entity.pk)
    raise InventoryValidationError(
        f"No se puede recalcular stock para {type(entity).__name__}."
    )


@transaction.atomic
def move_input_variant_stock(
    *,
    input_variant_id: int,
    delta: Decimal,
    movement_type: str,
    reason: str = "",
    notes: str = "",
    reference_type: str = "",
    reference_id: int | None = None,
    user=None,
) -> InputVariantMovement:
    """
    Aplica un cambio (delta con signo) al stock de una variante de insumo y
    registra su movimiento en la misma transacción.

    - No permite dejar stock negativo.
    - Recalcula el stock del insumo padre.
    """
    delta = Decimal(str(delta))
    if not delta.is_finite():
        raise InventoryValidationError("La cantidad del movimiento debe ser un número finito.")
    if delta == 0:
        raise InventoryValidationError("La cantidad del movimiento no puede ser 0.")

    try:
        variante = InputVariant.objects.select_for_update().select_related("input").get(
            pk=input_variant_id
        )
    except InputVariant.DoesNotExist:
        raise NotFoundError("Variante de insumo no encontrada.")

    stock_anterior = variante.current_stock or ZERO
    stock_nuevo = stock_anterior + delta
    if stock_nuevo < 0:
        logger.warning(
            "Stock insuficiente en variante de insumo %s: disponible %s, solicitado %s",
            variante.sku, stock_anterior, -delta,
        )
        raise InsufficientStockError(
            resource=str(variante),
            requested=-delta,
            available=stock_anterior,
        )

    variante.current_stock = stock_nuevo
    variante.save(update_fields=["current_stock", "updated_at"])

    movimiento = InputVariantMovement.objects.create(
        input_variant=variante,
        movement_type=movement_type,
        quantity=delta,
        previous_stock=stock_anterior,
        new_stock=stock_nuevo,
        reason=reason,
        notes=notes,
        reference_type=reference_type,
        reference_id=reference_id,
        **actor_fields(user),
    )

    recalculate_input_stock(variante.input_id)
    return movimiento


@transaction.atomic
def move_product_variant_stock(
    *,
    variant_id: int,
    delta: int,
    movement_type: str,
    reason: str = "",
    notes: str = "",
    reference_type: str = "",
    reference_id: int | None = None,
    user=None,
) -> ProductVariantMovement:
    """
    Igual que move_input_variant_stock pero para producto terminado
    (ProductVariant.stock, unidades enteras).
    """
    delta = int(delta)
    if delta == 0:
        raise InventoryValidationError("La cantidad del movimiento no puede ser 0.")

    try:
        variante = ProductVariant.objects.select_for_update().get(pk=variant_id)
    except ProductVariant.DoesNotExist:
        raise NotFoundError("Variante de producto no encontrada.")

    stock_anterior = variante.stock or 0
    stock_nuevo = stock_anterior + delta
    if stock_nuevo < 0:
        raise InsufficientStockError(
            resource=variante.sku,
            requested=-delta,
            available=stock_anterior,
        )

    variante.stock = stock_nuevo
    variante.save(update_fields=["stock", "updated_at"])

    return ProductVariantMovement.objects.create(
        variant=variante,
        movement_type=movement_type,
        quantity=delta,
        previous_stock=stock_anterior,
        new_stock=stock_nuevo,
        reason=reason,
        notes=notes,
        reference_type=reference_type,
        reference_id=reference_id,
        **actor_fields(user),
    )


def receive_input_variant_stock(*, input_variant_id: int, quantity: Decimal, reason: str = "", user=None):
    """
    Entrada de stock a una variante de insumo (compras, carga inicial).
    """
    quantity = Decimal(str(quantity))
    if not quantity.is_finite() or quantity <= 0:
        raise InventoryValidationError("La cantidad de una entrada debe ser > 0.")
    return move_input_variant_stock(
        input_variant_id=input_variant_id,
        delta=quantity,
        movement_type=MovementType.ENTRADA,
        reason=reason or "Entrada de stock",
        reference_type="purchase",
        user=user,
    )


def list_low_stock():
    """
    Insumos activos con current_stock <= min_stock.
    """
    return (
        Input.objects.filter(is_active=True, current_stock__lte=F("min_stock"))
        .order_by("current_stock", "name")
    )


def list_over_max_stock():
    """
    Insumos activos por encima de un stock máximo configurado (> 0).
    """
    return Input.objects.filter(
        is_active=True,
        max_stock__gt=0,
        current_stock__gt=F("max_stock"),
    ).order_by("name")


def stock_alert_level(material: Input) -> str:
    """
    Devuelve:
    - 'bajo_minimo'
    - 'sobre_maximo'
    - 'ok'
    """
    if material.is_low_stock:
        return "bajo_minimo"
    if material.is_over_max:
        return "sobre_maximo"
    return "ok"
