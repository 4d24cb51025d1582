# materials/services/batches.py

import logging
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.db.models import F, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from materials.conf import get_setting
from materials.exceptions import (
    InsufficientStockError,
    InventoryValidationError,
    NotFoundError,
)
from materials.models import (
    Input,
    InputBatch,
    InputBatchMovement,
    InputVariantMovement,
    MovementType,
    ReferenceType,
)
from materials.services.stock import actor_fields, recalculate_input_stock

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

EDITABLE_BATCH_FIELDS = {
    "batch_number",
    "supplier",
    "invoice_ref",
    "purchase_date",
    "expiry_date",
    "notes",
    "is_active",
}


def _as_decimal(value, campo: str) -> Decimal:
    try:
        numero = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InventoryValidationError(f"El campo '{campo}' debe ser numérico.")
    if not numero.is_finite():
        raise InventoryValidationError(f"El campo '{campo}' debe ser un número finito.")
    return numero


def _positive_quantity(value, campo: str = "quantity") -> Decimal:
    cantidad = _as_decimal(value, campo)
    if cantidad <= 0:
        raise InventoryValidationError("La cantidad debe ser mayor a cero.")
    return cantidad


def _lock_batch(batch_id: int) -> InputBatch:
    try:
        return InputBatch.objects.select_for_update().select_related("input").get(pk=batch_id)
    except InputBatch.DoesNotExist:
        raise NotFoundError("Lote no encontrado.")


def _record_movement(
    *,
    batch: InputBatch,
    movement_type: str,
    quantity: Decimal,
    previous_quantity: Decimal,
    reason: str = "",
    notes: str = "",
    reference_type: str = "",
    reference_id: int | None = None,
    user=None,
) -> InputBatchMovement:
    return InputBatchMovement.objects.create(
        input_id=batch.input_id,
        batch=batch,
        movement_type=movement_type,
        quantity=quantity,
        previous_quantity=previous_quantity,
        new_quantity=batch.current_quantity,
        reason=reason,
        notes=notes or "",
        reference_type=reference_type,
        reference_id=reference_id,
        **actor_fields(user),
    )


@transaction.atomic
def create_batch(
    *,
    input_id: int,
    batch_number: str,
    initial_quantity: Decimal,
    unit_cost: Decimal,
    supplier: str = "",
    invoice_ref: str = "",
    purchase_date: date | None = None,
    expiry_date: date | None = None,
    notes: str = "",
    user=None,
) -> InputBatch:
    """
    Registra la entrada de un lote:
    - current_quantity = initial_quantity, reserved_quantity = 0.
    - Movimiento ENTRADA por initial_quantity.
    - Recalcula el stock del insumo.
    """
    try:
        material = Input.objects.get(pk=input_id)
    except Input.DoesNotExist:
        raise NotFoundError("Insumo no encontrado.")

    batch_number = (batch_number or "").strip()
    if not batch_number:
        raise InventoryValidationError("El número de lote es obligatorio.")

    cantidad = _positive_quantity(initial_quantity, "initial_quantity")
    costo = _as_decimal(unit_cost, "unit_cost")
    if costo < 0:
        raise InventoryValidationError("El costo unitario no puede ser negativo.")

    if InputBatch.objects.filter(input=material, batch_number=batch_number).exists():
        raise InventoryValidationError(
            f"Ya existe el lote {batch_number} para el insumo {material.name}."
        )

    lote = InputBatch.objects.create(
        input=material,
        batch_number=batch_number,
        supplier=supplier or "",
        invoice_ref=invoice_ref or "",
        initial_quantity=cantidad,
        current_quantity=cantidad,
        reserved_quantity=ZERO,
        unit_cost=costo,
        purchase_date=purchase_date,
        expiry_date=expiry_date,
        notes=notes or "",
        is_active=True,
    )

    _record_movement(
        batch=lote,
        movement_type=MovementType.ENTRADA,
        quantity=cantidad,
        previous_quantity=ZERO,
        reason=f"Entrada de lote {batch_number}",
        notes=notes,
        reference_type=ReferenceType.PURCHASE,
        user=user,
    )

    recalculate_input_stock(material.pk)
    logger.info("Lote %s creado para insumo %s (%s)", batch_number, material.code, cantidad)
    return lote


@transaction.atomic
def update_batch(batch_id: int, **fields) -> InputBatch:
    """
    Actualiza datos descriptivos del lote. Las cantidades solo cambian vía
    adjust/reserve/release/output.
    """
    desconocidos = set(fields) - EDITABLE_BATCH_FIELDS
    if desconocidos:
        raise InventoryValidationError(
            "Campos no editables en un lote: " + ", ".join(sorted(desconocidos))
        )

    lote = _lock_batch(batch_id)

    if "batch_number" in fields:
        numero = (fields["batch_number"] or "").strip()
        if not numero:
            raise InventoryValidationError("El número de lote es obligatorio.")
        duplicado = (
            InputBatch.objects.filter(input_id=lote.input_id, batch_number=numero)
            .exclude(pk=lote.pk)
            .exists()
        )
        if duplicado:
            raise InventoryValidationError(f"Ya existe el lote {numero} para este insumo.")
        fields["batch_number"] = numero

    cambia_activo = "is_active" in fields and bool(fields["is_active"]) != lote.is_active

    for campo, valor in fields.items():
        setattr(lote, campo, valor)
    lote.save(update_fields=list(fields.keys()) + ["updated_at"])

    if cambia_activo:
        recalculate_input_stock(lote.input_id)
    return lote


@transaction.atomic
def adjust_batch_quantity(batch_id: int, *, new_quantity: Decimal, reason: str, user=None) -> InputBatch:
    """
    Corrige la cantidad actual del lote (daños, conteos errados).
    Acepta cualquier objetivo >= 0 y registra un AJUSTE por |nuevo - anterior|.
    """
    if not reason or not reason.strip():
        raise InventoryValidationError("El motivo del ajuste es obligatorio.")

    nueva = _as_decimal(new_quantity, "new_quantity")
    if nueva < 0:
        raise InventoryValidationError("La cantidad de un lote no puede ser negativa.")

    lote = _lock_batch(batch_id)
    anterior = lote.current_quantity

    lote.current_quantity = nueva
    lote.save(update_fields=["current_quantity", "updated_at"])

    _record_movement(
        batch=lote,
        movement_type=MovementType.AJUSTE,
        quantity=abs(nueva - anterior),
        previous_quantity=anterior,
        reason=reason.strip(),
        reference_type=ReferenceType.ADJUSTMENT,
        user=user,
    )

    recalculate_input_stock(lote.input_id)
    logger.info("Lote %s ajustado de %s a %s", lote.pk, anterior, nueva)
    return lote


@transaction.atomic
def reserve_from_batch(batch_id: int, *, quantity: Decimal, order_id: int, user=None) -> InputBatch:
    """
    Reserva stock del lote para una orden.

    Disponible = current_quantity - reserved_quantity. La reserva incrementa
    reserved_quantity y descuenta current_quantity a la vez (ver DESIGN.md,
    "Semántica de reserva").
    """
    cantidad = _positive_quantity(quantity)
    lote = _lock_batch(batch_id)

    if not lote.is_active:
        raise InventoryValidationError("No se puede reservar de un lote inactivo.")

    disponible = lote.available_quantity
    if cantidad > disponible:
        logger.warning(
            "Reserva rechazada en lote %s: disponible %s, solicitado %s", lote.pk, disponible, cantidad
        )
        raise InsufficientStockError(
            resource=f"{lote.input.name} [Lote {lote.batch_number}]",
            requested=cantidad,
            available=disponible,
        )

    anterior = lote.current_quantity
    lote.reserved_quantity = lote.reserved_quantity + cantidad
    lote.current_quantity = lote.current_quantity - cantidad
    lote.save(update_fields=["reserved_quantity", "current_quantity", "updated_at"])

    _record_movement(
        batch=lote,
        movement_type=MovementType.RESERVA,
        quantity=cantidad,
        previous_quantity=anterior,
        reason=f"Reserva para orden #{order_id}",
        reference_type=ReferenceType.ORDER,
        reference_id=order_id,
        user=user,
    )

    recalculate_input_stock(lote.input_id)
    logger.info("Lote %s: reservado %s para orden %s", lote.pk, cantidad, order_id)
    return lote


@transaction.atomic
def release_reservation(batch_id: int, *, quantity: Decimal, order_id: int, user=None) -> InputBatch:
    """
    Inverso de reserve_from_batch: devuelve la cantidad reservada al lote.
    """
    cantidad = _positive_quantity(quantity)
    lote = _lock_batch(batch_id)

    if cantidad > lote.reserved_quantity:
        raise InventoryValidationError(
            f"No se puede liberar {cantidad}: el lote solo tiene {lote.reserved_quantity} reservado."
        )

    anterior = lote.current_quantity
    lote.reserved_quantity = lote.reserved_quantity - cantidad
    lote.current_quantity = lote.current_quantity + cantidad
    lote.save(update_fields=["reserved_quantity", "current_quantity", "updated_at"])

    _record_movement(
        batch=lote,
        movement_type=MovementType.LIBERACION,
        quantity=cantidad,
        previous_quantity=anterior,
        reason=f"Liberación de reserva de orden #{order_id}",
        reference_type=ReferenceType.ORDER,
        reference_id=order_id,
        user=user,
    )

    recalculate_input_stock(lote.input_id)
    logger.info("Lote %s: liberado %s de orden %s", lote.pk, cantidad, order_id)
    return lote


@transaction.atomic
def record_output(batch_id: int, *, quantity: Decimal, production_id: int, user=None) -> InputBatch:
    """
    Salida definitiva por producción: consume cantidad previamente reservada.
    Solo reduce reserved_quantity (current_quantity ya se descontó al reservar).
    """
    cantidad = _positive_quantity(quantity)
    lote = _lock_batch(batch_id)

    if cantidad > lote.reserved_quantity:
        raise InsufficientStockError(
            resource=f"{lote.input.name} [Lote {lote.batch_number}] (reservado)",
            requested=cantidad,
            available=lote.reserved_quantity,
        )

    anterior = lote.current_quantity
    lote.reserved_quantity = lote.reserved_quantity - cantidad
    lote.save(update_fields=["reserved_quantity", "updated_at"])

    _record_movement(
        batch=lote,
        movement_type=MovementType.SALIDA,
        quantity=cantidad,
        previous_quantity=anterior,
        reason=f"Uso en producción #{production_id}",
        reference_type=ReferenceType.PRODUCTION,
        reference_id=production_id,
        user=user,
    )

    recalculate_input_stock(lote.input_id)
    logger.info("Lote %s: salida %s para producción %s", lote.pk, cantidad, production_id)
    return lote


def list_batches_by_input(input_id: int, *, include_inactive: bool = False):
    if not Input.objects.filter(pk=input_id).exists():
        raise NotFoundError("Insumo no encontrado.")
    qs = InputBatch.objects.select_related("input").filter(input_id=input_id)
    if not include_inactive:
        qs = qs.filter(is_active=True)
    return qs.order_by("-created_at", "-id")


def get_batch(batch_id: int) -> InputBatch:
    try:
        return InputBatch.objects.select_related("input").get(pk=batch_id)
    except InputBatch.DoesNotExist:
        raise NotFoundError("Lote no encontrado.")


def list_movements(*, input_id: int | None = None, batch_id: int | None = None, limit: int | None = None):
    """
    Movimientos de lotes, más recientes primero, filtrados por insumo o por lote.
    """
    if (input_id is None) == (batch_id is None):
        raise InventoryValidationError("Debe indicar input_id o batch_id (solo uno).")

    if limit is None:
        limit = get_setting("MOVEMENTS_DEFAULT_LIMIT")

    qs = InputBatchMovement.objects.select_related("batch", "input")
    if input_id is not None:
        qs = qs.filter(input_id=input_id)
    else:
        qs = qs.filter(batch_id=batch_id)
    return list(qs.order_by("-created_at", "-id")[:limit])


def list_all_movements(
    *,
    input_id: int | None = None,
    movement_type: str | None = None,
    reference_type: str | None = None,
    limit: int | None = None,
) -> list[dict]:
    """
    Feed combinado de movimientos de lotes y de variantes de insumo,
    normalizado y ordenado por fecha descendente.
    """
    if limit is None:
        limit = get_setting("MOVEMENTS_DEFAULT_LIMIT")

    lotes_qs = InputBatchMovement.objects.select_related("input", "batch")
    variantes_qs = InputVariantMovement.objects.select_related(
        "input_variant__input", "input_variant__color", "input_variant__size"
    )
    if input_id is not None:
        lotes_qs = lotes_qs.filter(input_id=input_id)
        variantes_qs = variantes_qs.filter(input_variant__input_id=input_id)
    if movement_type:
        lotes_qs = lotes_qs.filter(movement_type=movement_type)
        variantes_qs = variantes_qs.filter(movement_type=movement_type)
    if reference_type:
        lotes_qs = lotes_qs.filter(reference_type=reference_type)
        variantes_qs = variantes_qs.filter(reference_type=reference_type)

    resultado = []
    for m in lotes_qs.order_by("-created_at", "-id")[:limit]:
        resultado.append(
            {
                "id": m.id,
                "type": "batch",
                "input_id": m.input_id,
                "input_name": m.input.name,
                "batch_number": m.batch.batch_number,
                "input_variant_sku": None,
                "movement_type": m.movement_type,
                "quantity": m.quantity,
                "reason": m.reason,
                "reference_type": m.reference_type,
                "reference_id": m.reference_id,
                "user_name": m.user_name,
                "created_at": m.created_at,
            }
        )
    for m in variantes_qs.order_by("-created_at", "-id")[:limit]:
        resultado.append(
            {
                "id": m.id,
                "type": "variant",
                "input_id": m.input_variant.input_id,
                "input_name": m.input_variant.input.name,
                "batch_number": None,
                "input_variant_sku": m.input_variant.sku,
                "movement_type": m.movement_type,
                "quantity": m.quantity,
                "reason": m.reason,
                "reference_type": m.reference_type,
                "reference_id": m.reference_id,
                "user_name": m.user_name,
                "created_at": m.created_at,
            }
        )

    resultado.sort(key=lambda r: r["created_at"], reverse=True)
    return resultado[:limit]


def get_movement_stats() -> dict:
    hoy = timezone.localtime().replace(hour=0, minute=0, second=0, microsecond=0)
    activos = Input.objects.filter(is_active=True)

    total_stock = activos.aggregate(total=Coalesce(Sum("current_stock"), ZERO))["total"]
    bajo_minimo = activos.filter(
        current_stock__lte=F("min_stock"),
        current_stock__gt=0,
    ).count()
    movimientos_hoy = (
        InputBatchMovement.objects.filter(created_at__gte=hoy).count()
        + InputVariantMovement.objects.filter(created_at__gte=hoy).count()
    )

    return {
        "total_inputs": activos.count(),
        "total_stock": total_stock or ZERO,
        "low_stock": bajo_minimo,
        "today_movements": movimientos_hoy,
    }


def list_expiring_batches(*, days: int | None = None):
    """
    Lotes activos con stock que vencen entre hoy y hoy + days.
    """
    if days is None:
        days = get_setting("EXPIRY_WARNING_DAYS")
    hoy = date.today()
    return InputBatch.objects.select_related("input").filter(
        is_active=True,
        current_quantity__gt=0,
        expiry_date__isnull=False,
        expiry_date__gte=hoy,
        expiry_date__lte=hoy + timedelta(days=days),
    ).order_by("expiry_date")


def list_expired_batches():
    hoy = date.today()
    return InputBatch.objects.select_related("input").filter(
        is_active=True,
        current_quantity__gt=0,
        expiry_date__isnull=False,
        expiry_date__lt=hoy,
    ).order_by("expiry_date")
