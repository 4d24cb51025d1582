# materials/services/conversions.py

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.db.models import Count, Max, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from materials.conf import get_setting
from materials.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    InventoryValidationError,
    NotFoundError,
)
from materials.models import (
    ConversionInputItem,
    ConversionOutputItem,
    ConversionStatus,
    ConversionType,
    InputVariant,
    InventoryConversion,
    MovementType,
    ProductVariant,
    ReferenceType,
    TemplateRecipe,
)
from materials.services.recipes import calculate_requirements
from materials.services.stock import actor_fields, move_input_variant_stock, move_product_variant_stock

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CUATRO_DECIMALES = Decimal("0.0001")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@transaction.atomic
def generate_conversion_number(year: int | None = None) -> str:
    """
    Genera el siguiente número CONV-YYYY-NNNN del año.
    Continúa desde el mayor número existente del año; bloquea las filas del
    año hasta el fin de la transacción que lo llama.
    """
    prefijo = get_setting("CONVERSION_NUMBER_PREFIX")
    anio = year or timezone.localdate().year
    base = f"{prefijo}-{anio}-"

    maximo = 0
    numeros = InventoryConversion.objects.select_for_update().filter(
        conversion_number__startswith=base
    ).values_list("conversion_number", flat=True)
    for numero in numeros:
        try:
            maximo = max(maximo, int(numero[len(base):]))
        except ValueError:
            continue
    return f"{base}{maximo + 1:04d}"


def _create_numbered_conversion(**campos) -> InventoryConversion:
    """
    Crea la cabecera con el siguiente número. Si otra transacción tomó el
    mismo número (año sin filas que bloquear), reintenta una vez.
    """
    for intento in range(2):
        numero = generate_conversion_number()
        try:
            with transaction.atomic():
                return InventoryConversion.objects.create(conversion_number=numero, **campos)
        except IntegrityError:
            logger.warning("Número de conversión %s ya usado (intento %s)", numero, intento + 1)
    raise InvalidStateError("No se pudo asignar un número de conversión, intente nuevamente.")


def _get_conversion(conversion_id: int, *, lock: bool = False) -> InventoryConversion:
    qs = InventoryConversion.objects.all()
    if lock:
        qs = qs.select_for_update()
    try:
        return qs.get(pk=conversion_id)
    except InventoryConversion.DoesNotExist:
        raise NotFoundError("Conversión de inventario no encontrada.")


def _require_draft(conversion: InventoryConversion) -> None:
    if not conversion.is_editable:
        raise InvalidStateError("Solo se pueden modificar conversiones en borrador.")


def _positive_decimal(value, campo: str = "quantity") -> Decimal:
    try:
        cantidad = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InventoryValidationError(f"El campo '{campo}' debe ser numérico.")
    if not cantidad.is_finite():
        raise InventoryValidationError(f"El campo '{campo}' debe ser un número finito.")
    if cantidad <= 0:
        raise InventoryValidationError("La cantidad debe ser mayor a cero.")
    return cantidad


def _positive_int(value, campo: str = "quantity") -> int:
    try:
        cantidad = int(value)
    except (TypeError, ValueError, OverflowError):
        raise InventoryValidationError(f"El campo '{campo}' debe ser un entero.")
    if cantidad <= 0 or cantidad != Decimal(str(value)):
        raise InventoryValidationError("La cantidad debe ser un entero mayor a cero.")
    return cantidad


def _check_ingredient_stock(input_variant: InputVariant, quantity: Decimal) -> None:
    disponible = input_variant.current_stock or ZERO
    if quantity > disponible:
        logger.warning(
            "Stock insuficiente de %s (%s): disponible %s, requerido %s",
            input_variant, input_variant.sku, disponible, quantity,
        )
        raise InsufficientStockError(
            resource=str(input_variant),
            requested=quantity,
            available=disponible,
        )


def _recalculate_totals(conversion: InventoryConversion) -> InventoryConversion:
    conversion.total_input_cost = conversion.input_items.aggregate(
        total=Coalesce(Sum("total_cost"), ZERO)
    )["total"]
    conversion.total_output_cost = conversion.output_items.aggregate(
        total=Coalesce(Sum("total_value"), ZERO)
    )["total"]
    conversion.save(update_fields=["total_input_cost", "total_output_cost", "updated_at"])
    return conversion


def _build_input_item(conversion, input_variant: InputVariant, quantity: Decimal, notes: str = ""):
    costo = input_variant.effective_unit_cost
    return ConversionInputItem(
        conversion=conversion,
        input_variant=input_variant,
        input_code=input_variant.input.code,
        input_name=input_variant.input.name,
        variant_sku=input_variant.sku,
        unit_of_measure=input_variant.input.unit_of_measure,
        unit_cost=costo,
        quantity=quantity,
        total_cost=(quantity * costo).quantize(CUATRO_DECIMALES),
        notes=notes or "",
    )


def _build_output_item(conversion, variant: ProductVariant, quantity: int, notes: str = ""):
    precio = variant.unit_price
    return ConversionOutputItem(
        conversion=conversion,
        variant=variant,
        product_name=variant.product.name,
        variant_sku=variant.sku,
        color_name=variant.color.name if variant.color_id else "",
        size_name=variant.size.name if variant.size_id else "",
        unit_price=precio,
        quantity=quantity,
        total_value=(precio * quantity).quantize(CUATRO_DECIMALES),
        notes=notes or "",
    )


def _get_input_variant(input_variant_id: int) -> InputVariant:
    try:
        return InputVariant.objects.select_related("input", "color", "size").get(pk=input_variant_id)
    except InputVariant.DoesNotExist:
        raise NotFoundError("Variante de insumo no encontrada.")


def _get_product_variant(variant_id: int) -> ProductVariant:
    try:
        return ProductVariant.objects.select_related("product", "color", "size").get(pk=variant_id)
    except ProductVariant.DoesNotExist:
        raise NotFoundError("Variante de producto no encontrada.")


# ---------------------------------------------------------------------------
# Cabecera
# ---------------------------------------------------------------------------

@transaction.atomic
def create_conversion(
    *,
    conversion_date: date | None = None,
    description: str = "",
    notes: str = "",
    user=None,
) -> InventoryConversion:
    actor = actor_fields(user)
    conversion = _create_numbered_conversion(
        conversion_type=ConversionType.MANUAL,
        status=ConversionStatus.DRAFT,
        conversion_date=conversion_date or timezone.localdate(),
        created_by_id=actor["user_id"],
        created_by_name=actor["user_name"],
        description=description or "",
        notes=notes or "",
    )
    logger.info("Conversión %s creada (borrador)", conversion.conversion_number)
    return conversion


@transaction.atomic
def create_conversion_from_template(
    *,
    template_variant_id: int,
    quantity: int,
    output_variant_id: int | None = None,
    conversion_date: date | None = None,
    notes: str = "",
    user=None,
) -> InventoryConversion:
    """
    Arma una conversión en borrador a partir de la receta de una variante de
    template: un item de consumo por ingrediente (quantity * cantidad_receta)
    y un item de salida para la variante destino (por defecto, la misma).
    """
    variante = _get_product_variant(template_variant_id)
    if not variante.product.is_template:
        raise InventoryValidationError("La variante no pertenece a un template.")

    cantidad = _positive_int(quantity)

    if not TemplateRecipe.objects.filter(variant=variante).exists():
        raise InventoryValidationError(
            f"La variante {variante.sku} no tiene receta configurada."
        )

    requerimientos = calculate_requirements(variante.id, cantidad)
    for fila in requerimientos:
        if not fila["input_variant"].is_active:
            raise InventoryValidationError(
                f"La variante de insumo {fila['input_variant'].sku} está inactiva."
            )
        if fila["shortfall"] > 0:
            _check_ingredient_stock(fila["input_variant"], fila["required"])

    if output_variant_id is None or output_variant_id == variante.id:
        destino = variante
    else:
        destino = _get_product_variant(output_variant_id)

    actor = actor_fields(user)
    conversion = _create_numbered_conversion(
        conversion_type=ConversionType.TEMPLATE,
        template_variant=variante,
        status=ConversionStatus.DRAFT,
        conversion_date=conversion_date or timezone.localdate(),
        created_by_id=actor["user_id"],
        created_by_name=actor["user_name"],
        description=f"Producción de {cantidad} x {destino.sku}",
        notes=notes or "",
    )

    ConversionInputItem.objects.bulk_create(
        [
            _build_input_item(conversion, fila["input_variant"], fila["required"])
            for fila in requerimientos
        ]
    )
    _build_output_item(conversion, destino, cantidad).save()
    _recalculate_totals(conversion)

    logger.info(
        "Conversión %s creada desde template %s (%s unidades, %s insumos)",
        conversion.conversion_number, variante.sku, cantidad, len(requerimientos),
    )
    return conversion


def list_conversions(
    *,
    status: str | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
):
    qs = InventoryConversion.objects.prefetch_related("input_items", "output_items")
    if status:
        if status not in ConversionStatus.values:
            raise InventoryValidationError(f"Estado de conversión inválido: {status}")
        qs = qs.filter(status=status)
    if from_date:
        qs = qs.filter(conversion_date__gte=from_date)
    if to_date:
        qs = qs.filter(conversion_date__lte=to_date)
    return qs.order_by("-created_at", "-id")


def get_conversion(conversion_id: int) -> InventoryConversion:
    try:
        return InventoryConversion.objects.prefetch_related("input_items", "output_items").get(
            pk=conversion_id
        )
    except InventoryConversion.DoesNotExist:
        raise NotFoundError("Conversión de inventario no encontrada.")


@transaction.atomic
def delete_conversion(conversion_id: int) -> None:
    conversion = _get_conversion(conversion_id, lock=True)
    if not conversion.can_be_deleted:
        raise InvalidStateError("Solo se pueden eliminar conversiones en borrador o canceladas.")
    numero = conversion.conversion_number
    conversion.delete()
    logger.info("Conversión %s eliminada", numero)


# ---------------------------------------------------------------------------
# Items (solo en borrador)
# ---------------------------------------------------------------------------

@transaction.atomic
def add_input_item(conversion_id: int, *, input_variant_id: int, quantity: Decimal, notes: str = ""):
    conversion = _get_conversion(conversion_id, lock=True)
    _require_draft(conversion)

    cantidad = _positive_decimal(quantity)
    variante = _get_input_variant(input_variant_id)
    if not variante.is_active:
        raise InventoryValidationError(f"La variante de insumo {variante.sku} está inactiva.")

    if conversion.input_items.filter(input_variant=variante).exists():
        raise InventoryValidationError("Este insumo ya está agregado a la conversión.")

    _check_ingredient_stock(variante, cantidad)

    item = _build_input_item(conversion, variante, cantidad, notes)
    item.save()
    _recalculate_totals(conversion)
    return item


@transaction.atomic
def update_input_item(conversion_id: int, item_id: int, *, quantity=None, notes: str | None = None):
    conversion = _get_conversion(conversion_id, lock=True)
    _require_draft(conversion)

    try:
        item = conversion.input_items.select_related("input_variant__input").get(pk=item_id)
    except ConversionInputItem.DoesNotExist:
        raise NotFoundError("Item no encontrado.")

    if quantity is not None:
        cantidad = _positive_decimal(quantity)
        _check_ingredient_stock(item.input_variant, cantidad)
        item.quantity = cantidad
        item.total_cost = (cantidad * item.unit_cost).quantize(CUATRO_DECIMALES)
    if notes is not None:
        item.notes = notes
    item.save()
    _recalculate_totals(conversion)
    return item


@transaction.atomic
def remove_input_item(conversion_id: int, item_id: int) -> None:
    conversion = _get_conversion(conversion_id, lock=True)
    _require_draft(conversion)

    borrados, _ = conversion.input_items.filter(pk=item_id).delete()
    if not borrados:
        raise NotFoundError("Item no encontrado.")
    _recalculate_totals(conversion)


@transaction.atomic
def add_output_item(conversion_id: int, *, variant_id: int, quantity: int, notes: str = ""):
    conversion = _get_conversion(conversion_id, lock=True)
    _require_draft(conversion)

    cantidad = _positive_int(quantity)
    variante = _get_product_variant(variant_id)

    if conversion.output_items.filter(variant=variante).exists():
        raise InventoryValidationError("Esta variante ya está agregada a la conversión.")

    item = _build_output_item(conversion, variante, cantidad, notes)
    item.save()
    _recalculate_totals(conversion)
    return item


@transaction.atomic
def update_output_item(conversion_id: int, item_id: int, *, quantity=None, notes: str | None = None):
    conversion = _get_conversion(conversion_id, lock=True)
    _require_draft(conversion)

    try:
        item = conversion.output_items.get(pk=item_id)
    except ConversionOutputItem.DoesNotExist:
        raise NotFoundError("Item no encontrado.")

    if quantity is not None:
        cantidad = _positive_int(quantity)
        item.quantity = cantidad
        item.total_value = (item.unit_price * cantidad).quantize(CUATRO_DECIMALES)
    if notes is not None:
        item.notes = notes
    item.save()
    _recalculate_totals(conversion)
    return item


@transaction.atomic
def remove_output_item(conversion_id: int, item_id: int) -> None:
    conversion = _get_conversion(conversion_id, lock=True)
    _require_draft(conversion)

    borrados, _ = conversion.output_items.filter(pk=item_id).delete()
    if not borrados:
        raise NotFoundError("Item no encontrado.")
    _recalculate_totals(conversion)


# ---------------------------------------------------------------------------
# Transiciones
# ---------------------------------------------------------------------------

@transaction.atomic
def submit_for_approval(conversion_id: int) -> InventoryConversion:
    """
    DRAFT → PENDING. Requiere al menos un insumo y un producto, y que cada
    insumo alcance para su línea con el stock actual (chequeo optimista:
    se vuelve a validar con bloqueo al aprobar).
    """
    conversion = _get_conversion(conversion_id, lock=True)
    if not conversion.can_transition_to(ConversionStatus.PENDING):
        raise InvalidStateError("Solo se pueden enviar a aprobación conversiones en borrador.")

    items_insumo = list(conversion.input_items.select_related("input_variant__input"))
    if not items_insumo:
        raise InventoryValidationError("Debe agregar al menos un insumo a consumir.")
    if not conversion.output_items.exists():
        raise InventoryValidationError("Debe agregar al menos un producto a generar.")

    for item in items_insumo:
        _check_ingredient_stock(item.input_variant, item.quantity)

    conversion.status = ConversionStatus.PENDING
    conversion.save(update_fields=["status", "updated_at"])
    logger.info("Conversión %s enviada a aprobación", conversion.conversion_number)
    return conversion


@transaction.atomic
def approve_conversion(conversion_id: int, *, user=None) -> InventoryConversion:
    """
    PENDING → APPROVED aplicando el inventario en una sola transacción:

    1) Bloquea la cabecera y las variantes de insumo (en orden de id).
    2) Revalida stock con las filas bloqueadas.
    3) Descuenta cada insumo (SALIDA) y suma cada producto (ENTRADA).
    4) Marca la conversión como aprobada.

    Cualquier error revierte todo.
    """
    conversion = _get_conversion(conversion_id, lock=True)
    if not conversion.can_transition_to(ConversionStatus.APPROVED):
        raise InvalidStateError("Solo se pueden aprobar conversiones pendientes.")

    items_insumo = list(conversion.input_items.order_by("input_variant_id"))
    items_producto = list(conversion.output_items.order_by("variant_id"))

    bloqueadas = {
        v.id: v
        for v in InputVariant.objects.select_for_update()
        .select_related("input", "color", "size")
        .filter(pk__in=[i.input_variant_id for i in items_insumo])
        .order_by("id")
    }
    for item in items_insumo:
        _check_ingredient_stock(bloqueadas[item.input_variant_id], item.quantity)

    motivo_salida = f"Conversión a producto {conversion.conversion_number}"
    for item in items_insumo:
        move_input_variant_stock(
            input_variant_id=item.input_variant_id,
            delta=-item.quantity,
            movement_type=MovementType.SALIDA,
            reason=motivo_salida,
            notes=item.notes,
            reference_type=ReferenceType.CONVERSION,
            reference_id=conversion.id,
            user=user,
        )

    motivo_entrada = f"Conversión desde insumos {conversion.conversion_number}"
    for item in items_producto:
        move_product_variant_stock(
            variant_id=item.variant_id,
            delta=item.quantity,
            movement_type=MovementType.ENTRADA,
            reason=motivo_entrada,
            notes=item.notes,
            reference_type=ReferenceType.CONVERSION,
            reference_id=conversion.id,
            user=user,
        )

    actor = actor_fields(user)
    conversion.status = ConversionStatus.APPROVED
    conversion.approved_by_id = actor["user_id"]
    conversion.approved_by_name = actor["user_name"]
    conversion.approved_at = timezone.now()
    conversion.save(
        update_fields=["status", "approved_by_id", "approved_by_name", "approved_at", "updated_at"]
    )
    logger.info(
        "Conversión %s aprobada por %s: %s insumos consumidos, %s productos generados",
        conversion.conversion_number, actor["user_name"] or "-", len(items_insumo), len(items_producto),
    )
    return conversion


@transaction.atomic
def cancel_conversion(conversion_id: int) -> InventoryConversion:
    conversion = _get_conversion(conversion_id, lock=True)
    if not conversion.can_transition_to(ConversionStatus.CANCELLED):
        raise InvalidStateError(
            f"No se puede cancelar una conversión en estado {conversion.get_status_display()}."
        )
    conversion.status = ConversionStatus.CANCELLED
    conversion.cancelled_at = timezone.now()
    conversion.save(update_fields=["status", "cancelled_at", "updated_at"])
    logger.info("Conversión %s cancelada", conversion.conversion_number)
    return conversion


# ---------------------------------------------------------------------------
# Estadísticas
# ---------------------------------------------------------------------------

def get_conversion_stats() -> dict:
    por_estado = {estado: 0 for estado in ConversionStatus.values}
    for fila in InventoryConversion.objects.values("status").annotate(n=Count("id")):
        por_estado[fila["status"]] = fila["n"]

    aprobadas = InventoryConversion.objects.filter(status=ConversionStatus.APPROVED).aggregate(
        input_cost=Coalesce(Sum("total_input_cost"), ZERO),
        output_value=Coalesce(Sum("total_output_cost"), ZERO),
        last_approved_at=Max("approved_at"),
    )
    return {
        "total": sum(por_estado.values()),
        "by_status": por_estado,
        "total_input_cost": aprobadas["input_cost"],
        "total_output_value": aprobadas["output_value"],
        "last_approved_at": aprobadas["last_approved_at"],
    }
