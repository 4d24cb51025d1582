from datetime import date, timedelta
from decimal import Decimal

from django.db import models
from django.db.models import Q

from materials.exceptions import InvalidStateError


class TimeStampedModel(models.Model):
    """
    Modelo base abstracto con timestamps estándar.
    """
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class MovementType(models.TextChoices):
    ENTRADA = "ENTRADA", "Entrada"
    AJUSTE = "AJUSTE", "Ajuste"
    RESERVA = "RESERVA", "Reserva"
    LIBERACION = "LIBERACION", "Liberación de reserva"
    SALIDA = "SALIDA", "Salida"


class ReferenceType(models.TextChoices):
    PURCHASE = "purchase", "Compra"
    ADJUSTMENT = "adjustment", "Ajuste"
    ORDER = "order", "Orden"
    PRODUCTION = "production", "Producción"
    CONVERSION = "conversion", "Conversión"


class MovementBase(models.Model):
    """
    Hecho inmutable del ledger: se crea una sola vez por mutación de stock
    y nunca se actualiza ni se elimina.
    """
    movement_type = models.CharField(max_length=20, choices=MovementType.choices)
    reason = models.CharField(max_length=255, blank=True)
    notes = models.TextField(blank=True)
    reference_type = models.CharField(
        max_length=20,
        choices=ReferenceType.choices,
        blank=True,
    )
    reference_id = models.BigIntegerField(null=True, blank=True)
    # Identidad del actor (la entrega el colaborador de autenticación)
    user_id = models.BigIntegerField(null=True, blank=True)
    user_name = models.CharField(max_length=150, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        abstract = True
        ordering = ["-created_at", "-id"]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise InvalidStateError("Los movimientos de inventario no se pueden modificar.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise InvalidStateError("Los movimientos de inventario no se pueden eliminar.")


# ---------------------------------------------------------------------------
# Catálogo (colaborador externo, solo lo necesario para recetas y conversiones)
# ---------------------------------------------------------------------------

class Color(TimeStampedModel):
    name = models.CharField(max_length=50, unique=True)
    hex_code = models.CharField(max_length=7, blank=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Size(TimeStampedModel):
    name = models.CharField(max_length=50, unique=True)
    abbreviation = models.CharField(max_length=10, unique=True)
    sort_order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["sort_order", "name"]

    def __str__(self):
        return self.abbreviation or self.name


class Product(TimeStampedModel):
    """
    Producto del catálogo. Los templates (is_template=True) se fabrican
    a partir de insumos según TemplateRecipe.
    """
    name = models.CharField(max_length=150)
    base_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    is_template = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class ProductVariant(TimeStampedModel):
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name="variants",
    )
    color = models.ForeignKey(
        Color,
        on_delete=models.PROTECT,
        related_name="product_variants",
        null=True,
        blank=True,
    )
    size = models.ForeignKey(
        Size,
        on_delete=models.PROTECT,
        related_name="product_variants",
        null=True,
        blank=True,
    )
    sku = models.CharField(max_length=255, unique=True)
    stock = models.IntegerField(
        default=0,
        help_text="Unidades terminadas disponibles para la venta.",
    )
    min_stock = models.IntegerField(default=0)
    price_adjustment = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["product", "sku"]

    def __str__(self):
        return self.sku

    @property
    def unit_price(self) -> Decimal:
        base = self.product.base_price or Decimal("0")
        return base + (self.price_adjustment or Decimal("0"))


class ProductVariantMovement(MovementBase):
    variant = models.ForeignKey(
        ProductVariant,
        on_delete=models.PROTECT,
        related_name="movements",
    )
    quantity = models.IntegerField(help_text="Positiva para entrada, negativa para salida.")
    previous_stock = models.IntegerField()
    new_stock = models.IntegerField()

    class Meta(MovementBase.Meta):
        verbose_name = "Movimiento de variante de producto"
        verbose_name_plural = "Movimientos de variantes de producto"

    def __str__(self):
        return f"{self.movement_type} {self.variant} ({self.quantity})"


# ---------------------------------------------------------------------------
# Insumos, variantes de insumo y lotes
# ---------------------------------------------------------------------------

class Input(TimeStampedModel):
    """
    Insumo (materia prima). current_stock es una proyección cacheada que solo
    escribe el agregador de stock (services/stock.py); la fuente de verdad son
    los lotes activos o, si el insumo no usa lotes, sus variantes.
    """
    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=150)
    description = models.TextField(blank=True)
    unit_of_measure = models.CharField(max_length=20, default="unidad")
    unit_cost = models.DecimalField(max_digits=12, decimal_places=4, default=0)
    current_stock = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        default=0,
        editable=False,
    )
    min_stock = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        default=0,
        help_text="Cantidad mínima recomendada en unidad del insumo.",
    )
    max_stock = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        default=0,
        help_text="Cantidad máxima recomendada (0 = sin máximo).",
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.code} - {self.name}"

    @property
    def is_low_stock(self) -> bool:
        return (self.current_stock or Decimal("0")) <= (self.min_stock or Decimal("0"))

    @property
    def is_over_max(self) -> bool:
        if not self.max_stock or self.max_stock <= 0:
            return False
        return (self.current_stock or Decimal("0")) > self.max_stock


class InputVariant(TimeStampedModel):
    """
    Variante de insumo por color/talla. Su stock es independiente de los lotes
    y solo se mueve a través de services.stock.move_input_variant_stock.
    """
    input = models.ForeignKey(
        Input,
        on_delete=models.CASCADE,
        related_name="variants",
    )
    color = models.ForeignKey(
        Color,
        on_delete=models.PROTECT,
        related_name="input_variants",
        null=True,
        blank=True,
    )
    size = models.ForeignKey(
        Size,
        on_delete=models.PROTECT,
        related_name="input_variants",
        null=True,
        blank=True,
    )
    sku = models.CharField(max_length=255, unique=True)
    unit_cost = models.DecimalField(
        max_digits=12,
        decimal_places=4,
        null=True,
        blank=True,
        help_text="Si está vacío se usa el costo unitario del insumo.",
    )
    current_stock = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        default=0,
        editable=False,
    )
    min_stock = models.DecimalField(max_digits=14, decimal_places=3, default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["input", "sku"]

    def __str__(self):
        partes = [self.input.name]
        if self.color_id:
            partes.append(self.color.name)
        if self.size_id:
            partes.append(self.size.name)
        return " / ".join(partes)

    @property
    def effective_unit_cost(self) -> Decimal:
        if self.unit_cost is not None:
            return self.unit_cost
        return self.input.unit_cost or Decimal("0")


class InputVariantMovement(MovementBase):
    input_variant = models.ForeignKey(
        InputVariant,
        on_delete=models.PROTECT,
        related_name="movements",
    )
    quantity = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        help_text="Positiva para entrada, negativa para salida.",
    )
    previous_stock = models.DecimalField(max_digits=14, decimal_places=3)
    new_stock = models.DecimalField(max_digits=14, decimal_places=3)

    class Meta(MovementBase.Meta):
        verbose_name = "Movimiento de variante de insumo"
        verbose_name_plural = "Movimientos de variantes de insumo"

    def __str__(self):
        return f"{self.movement_type} {self.input_variant} ({self.quantity})"


class InputBatch(TimeStampedModel):
    """
    Lote de un insumo: unidad atómica de stock físico.
    - initial_quantity no cambia después de creado.
    - available_quantity = current_quantity - reserved_quantity.
    Los lotes se desactivan, no se borran, mientras tengan movimientos.
    """
    input = models.ForeignKey(
        Input,
        on_delete=models.PROTECT,
        related_name="batches",
    )
    batch_number = models.CharField(
        max_length=100,
        help_text="Identificador de lote entregado por proveedor o interno.",
    )
    supplier = models.CharField(max_length=150, blank=True)
    invoice_ref = models.CharField(max_length=100, blank=True)
    initial_quantity = models.DecimalField(max_digits=14, decimal_places=3)
    current_quantity = models.DecimalField(max_digits=14, decimal_places=3, default=0)
    reserved_quantity = models.DecimalField(max_digits=14, decimal_places=3, default=0)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=4, default=0)
    total_cost = models.DecimalField(
        max_digits=16,
        decimal_places=4,
        default=0,
        editable=False,
        help_text="initial_quantity * unit_cost",
    )
    purchase_date = models.DateField(null=True, blank=True)
    expiry_date = models.DateField(null=True, blank=True)
    notes = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        verbose_name = "Lote de insumo"
        verbose_name_plural = "Lotes de insumos"
        ordering = ["-created_at", "-id"]
        unique_together = ("input", "batch_number")
        constraints = [
            models.CheckConstraint(
                condition=Q(current_quantity__gte=0),
                name="input_batch_current_quantity_gte_0",
            ),
            models.CheckConstraint(
                condition=Q(reserved_quantity__gte=0),
                name="input_batch_reserved_quantity_gte_0",
            ),
        ]

    def __str__(self):
        return f"{self.input.name} [Lote {self.batch_number}]"

    def save(self, *args, **kwargs):
        update_fields = kwargs.get("update_fields")
        if not self._state.adding and (update_fields is None or "initial_quantity" in update_fields):
            original = (
                InputBatch.objects.filter(pk=self.pk)
                .values_list("initial_quantity", flat=True)
                .first()
            )
            if original is not None and original != self.initial_quantity:
                raise InvalidStateError("La cantidad inicial de un lote no se puede modificar.")
        if self.initial_quantity is not None and self.unit_cost is not None:
            self.total_cost = (self.initial_quantity * self.unit_cost).quantize(Decimal("0.0001"))
        super().save(*args, **kwargs)

    @property
    def available_quantity(self) -> Decimal:
        return (self.current_quantity or Decimal("0")) - (self.reserved_quantity or Decimal("0"))

    @property
    def is_expired(self) -> bool:
        if not self.expiry_date:
            return False
        return self.expiry_date < date.today()

    def expires_within(self, days: int = 7) -> bool:
        """
        True si el lote vence dentro de los próximos `days` días (incluyendo hoy).
        """
        if not self.expiry_date:
            return False
        hoy = date.today()
        return hoy <= self.expiry_date <= hoy + timedelta(days=days)


class InputBatchMovement(MovementBase):
    input = models.ForeignKey(
        Input,
        on_delete=models.PROTECT,
        related_name="batch_movements",
    )
    batch = models.ForeignKey(
        InputBatch,
        on_delete=models.PROTECT,
        related_name="movements",
    )
    quantity = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        help_text="Magnitud del movimiento (el tipo indica el sentido).",
    )
    previous_quantity = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        help_text="current_quantity del lote antes del movimiento.",
    )
    new_quantity = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        help_text="current_quantity del lote después del movimiento.",
    )

    class Meta(MovementBase.Meta):
        verbose_name = "Movimiento de lote"
        verbose_name_plural = "Movimientos de lotes"

    def __str__(self):
        return f"{self.movement_type} - {self.batch} ({self.quantity})"


# ---------------------------------------------------------------------------
# Recetas de templates
# ---------------------------------------------------------------------------

class TemplateInput(TimeStampedModel):
    """
    Asociación simple template ↔ insumo; sirve de base para generar recetas
    por coincidencia de color/talla.
    """
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name="template_inputs",
    )
    input = models.ForeignKey(
        Input,
        on_delete=models.CASCADE,
        related_name="template_inputs",
    )

    class Meta:
        unique_together = ("product", "input")

    def __str__(self):
        return f"{self.product} ← {self.input}"


class TemplateRecipe(TimeStampedModel):
    """
    Línea de receta: cuánto de una variante de insumo se necesita para
    fabricar una unidad de la variante del template.
    """
    variant = models.ForeignKey(
        ProductVariant,
        on_delete=models.CASCADE,
        related_name="template_recipes",
    )
    input_variant = models.ForeignKey(
        InputVariant,
        on_delete=models.PROTECT,
        related_name="recipes",
    )
    quantity = models.DecimalField(
        max_digits=12,
        decimal_places=4,
        default=Decimal("1"),
        help_text="Cantidad necesaria por unidad terminada, en unidad del insumo.",
    )

    class Meta:
        verbose_name = "Receta de template"
        verbose_name_plural = "Recetas de template"
        ordering = ["variant", "input_variant"]
        unique_together = ("variant", "input_variant")
        constraints = [
            models.CheckConstraint(
                condition=Q(quantity__gt=0),
                name="template_recipe_quantity_gt_0",
            ),
        ]

    def __str__(self):
        return f"{self.quantity} de {self.input_variant} para {self.variant}"


# ---------------------------------------------------------------------------
# Conversiones de inventario (insumos → producto terminado)
# ---------------------------------------------------------------------------

class ConversionStatus(models.TextChoices):
    DRAFT = "DRAFT", "Borrador"
    PENDING = "PENDING", "Pendiente de aprobación"
    APPROVED = "APPROVED", "Aprobada"
    CANCELLED = "CANCELLED", "Cancelada"


class ConversionType(models.TextChoices):
    MANUAL = "MANUAL", "Manual"
    TEMPLATE = "TEMPLATE", "Desde template"


ALLOWED_TRANSITIONS = {
    ConversionStatus.DRAFT: {ConversionStatus.PENDING, ConversionStatus.CANCELLED},
    ConversionStatus.PENDING: {ConversionStatus.APPROVED, ConversionStatus.CANCELLED},
    ConversionStatus.APPROVED: set(),
    ConversionStatus.CANCELLED: set(),
}


class InventoryConversion(TimeStampedModel):
    """
    Cabecera de una conversión de insumos en producto terminado.
    Flujo: DRAFT → PENDING → APPROVED, con salida lateral a CANCELLED
    desde DRAFT o PENDING. APPROVED y CANCELLED son terminales.
    """
    conversion_number = models.CharField(max_length=30, unique=True)
    conversion_type = models.CharField(
        max_length=10,
        choices=ConversionType.choices,
        default=ConversionType.MANUAL,
    )
    template_variant = models.ForeignKey(
        ProductVariant,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="template_conversions",
    )
    status = models.CharField(
        max_length=10,
        choices=ConversionStatus.choices,
        default=ConversionStatus.DRAFT,
    )
    conversion_date = models.DateField()

    created_by_id = models.BigIntegerField(null=True, blank=True)
    created_by_name = models.CharField(max_length=150, blank=True)
    approved_by_id = models.BigIntegerField(null=True, blank=True)
    approved_by_name = models.CharField(max_length=150, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    description = models.CharField(max_length=255, blank=True)
    notes = models.TextField(blank=True)

    total_input_cost = models.DecimalField(max_digits=16, decimal_places=4, default=0)
    total_output_cost = models.DecimalField(max_digits=16, decimal_places=4, default=0)

    class Meta:
        verbose_name = "Conversión de inventario"
        verbose_name_plural = "Conversiones de inventario"
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.conversion_number} ({self.status})"

    @property
    def is_editable(self) -> bool:
        """Solo se editan items en borrador."""
        return self.status == ConversionStatus.DRAFT

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[ConversionStatus(self.status)]

    def can_transition_to(self, status: str) -> bool:
        return ConversionStatus(status) in ALLOWED_TRANSITIONS[ConversionStatus(self.status)]

    @property
    def can_be_deleted(self) -> bool:
        return self.status in (ConversionStatus.DRAFT, ConversionStatus.CANCELLED)


class ConversionInputItem(TimeStampedModel):
    """
    Snapshot congelado de una línea de consumo de insumo.
    """
    conversion = models.ForeignKey(
        InventoryConversion,
        on_delete=models.CASCADE,
        related_name="input_items",
    )
    input_variant = models.ForeignKey(
        InputVariant,
        on_delete=models.PROTECT,
        related_name="conversion_items",
    )
    input_code = models.CharField(max_length=50)
    input_name = models.CharField(max_length=150)
    variant_sku = models.CharField(max_length=255)
    unit_of_measure = models.CharField(max_length=20)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=4)
    quantity = models.DecimalField(max_digits=14, decimal_places=3)
    total_cost = models.DecimalField(max_digits=16, decimal_places=4)
    notes = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["input_name", "id"]
        unique_together = ("conversion", "input_variant")

    def __str__(self):
        return f"{self.quantity} {self.unit_of_measure} de {self.input_name} ({self.variant_sku})"


class ConversionOutputItem(TimeStampedModel):
    """
    Snapshot congelado de una línea de producto terminado generado.
    """
    conversion = models.ForeignKey(
        InventoryConversion,
        on_delete=models.CASCADE,
        related_name="output_items",
    )
    variant = models.ForeignKey(
        ProductVariant,
        on_delete=models.PROTECT,
        related_name="conversion_items",
    )
    product_name = models.CharField(max_length=150)
    variant_sku = models.CharField(max_length=255)
    color_name = models.CharField(max_length=50, blank=True)
    size_name = models.CharField(max_length=50, blank=True)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField()
    total_value = models.DecimalField(max_digits=16, decimal_places=4)
    notes = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["product_name", "id"]
        unique_together = ("conversion", "variant")

    def __str__(self):
        return f"{self.quantity} x {self.product_name} ({self.variant_sku})"
