from rest_framework import serializers

from materials.models import (
    ConversionInputItem,
    ConversionOutputItem,
    ConversionStatus,
    Input,
    InputBatch,
    InputBatchMovement,
    InputVariant,
    InventoryConversion,
    TemplateRecipe,
)
from materials.services.stock import stock_alert_level


# ---------------------------------------------------------------------------
# Lectura
# ---------------------------------------------------------------------------

class InputVariantSerializer(serializers.ModelSerializer):
    color_name = serializers.CharField(source="color.name", read_only=True, default=None)
    size_name = serializers.CharField(source="size.name", read_only=True, default=None)
    effective_unit_cost = serializers.DecimalField(max_digits=12, decimal_places=4, read_only=True)

    class Meta:
        model = InputVariant
        fields = [
            "id",
            "input",
            "sku",
            "color",
            "color_name",
            "size",
            "size_name",
            "unit_cost",
            "effective_unit_cost",
            "current_stock",
            "min_stock",
            "is_active",
        ]
        read_only_fields = fields


class InputSerializer(serializers.ModelSerializer):
    """
    Insumo con su stock cacheado y nivel de alerta.
    Solo lectura: el stock se mueve por lotes o variantes, nunca directo.
    """

    variants = InputVariantSerializer(many=True, read_only=True)
    is_low_stock = serializers.BooleanField(read_only=True)
    nivel_alerta = serializers.SerializerMethodField()

    class Meta:
        model = Input
        fields = [
            "id",
            "code",
            "name",
            "description",
            "unit_of_measure",
            "unit_cost",
            "current_stock",
            "min_stock",
            "max_stock",
            "is_active",
            "is_low_stock",
            "nivel_alerta",
            "variants",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_nivel_alerta(self, obj):
        return stock_alert_level(obj)


class InputBatchSerializer(serializers.ModelSerializer):
    input_name = serializers.CharField(source="input.name", read_only=True)
    available_quantity = serializers.DecimalField(max_digits=14, decimal_places=3, read_only=True)
    is_expired = serializers.BooleanField(read_only=True)

    class Meta:
        model = InputBatch
        fields = [
            "id",
            "input",
            "input_name",
            "batch_number",
            "supplier",
            "invoice_ref",
            "initial_quantity",
            "current_quantity",
            "reserved_quantity",
            "available_quantity",
            "unit_cost",
            "total_cost",
            "purchase_date",
            "expiry_date",
            "is_expired",
            "notes",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InputBatchMovementSerializer(serializers.ModelSerializer):
    batch_number = serializers.CharField(source="batch.batch_number", read_only=True)

    class Meta:
        model = InputBatchMovement
        fields = [
            "id",
            "input",
            "batch",
            "batch_number",
            "movement_type",
            "quantity",
            "previous_quantity",
            "new_quantity",
            "reason",
            "notes",
            "reference_type",
            "reference_id",
            "user_id",
            "user_name",
            "created_at",
        ]
        read_only_fields = fields


class TemplateRecipeSerializer(serializers.ModelSerializer):
    variant_sku = serializers.CharField(source="variant.sku", read_only=True)
    input_variant_detail = InputVariantSerializer(source="input_variant", read_only=True)
    input_name = serializers.CharField(source="input_variant.input.name", read_only=True)

    class Meta:
        model = TemplateRecipe
        fields = [
            "id",
            "variant",
            "variant_sku",
            "input_variant",
            "input_variant_detail",
            "input_name",
            "quantity",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class ConversionInputItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = ConversionInputItem
        fields = [
            "id",
            "input_variant",
            "input_code",
            "input_name",
            "variant_sku",
            "unit_of_measure",
            "unit_cost",
            "quantity",
            "total_cost",
            "notes",
        ]
        read_only_fields = fields


class ConversionOutputItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = ConversionOutputItem
        fields = [
            "id",
            "variant",
            "product_name",
            "variant_sku",
            "color_name",
            "size_name",
            "unit_price",
            "quantity",
            "total_value",
            "notes",
        ]
        read_only_fields = fields


class InventoryConversionSerializer(serializers.ModelSerializer):
    input_items = ConversionInputItemSerializer(many=True, read_only=True)
    output_items = ConversionOutputItemSerializer(many=True, read_only=True)

    class Meta:
        model = InventoryConversion
        fields = [
            "id",
            "conversion_number",
            "conversion_type",
            "template_variant",
            "status",
            "conversion_date",
            "created_by_id",
            "created_by_name",
            "approved_by_id",
            "approved_by_name",
            "approved_at",
            "cancelled_at",
            "description",
            "notes",
            "input_items",
            "output_items",
            "total_input_cost",
            "total_output_cost",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


# ---------------------------------------------------------------------------
# Requests por operación
# ---------------------------------------------------------------------------

class PositiveQuantityMixin:
    def validate_quantity(self, value):
        if value is not None and value <= 0:
            raise serializers.ValidationError("La cantidad debe ser mayor a cero.")
        return value


class BatchCreateSerializer(serializers.Serializer):
    input = serializers.IntegerField()
    batch_number = serializers.CharField(max_length=100)
    initial_quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    unit_cost = serializers.DecimalField(max_digits=12, decimal_places=4, required=False, default=0)
    supplier = serializers.CharField(max_length=150, required=False, allow_blank=True, default="")
    invoice_ref = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    purchase_date = serializers.DateField(required=False, allow_null=True, default=None)
    expiry_date = serializers.DateField(required=False, allow_null=True, default=None)
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_initial_quantity(self, value):
        if value <= 0:
            raise serializers.ValidationError("La cantidad inicial debe ser mayor a cero.")
        return value

    def validate(self, attrs):
        purchase_date = attrs.get("purchase_date")
        expiry_date = attrs.get("expiry_date")
        if purchase_date and expiry_date and expiry_date < purchase_date:
            raise serializers.ValidationError(
                {"expiry_date": "La fecha de vencimiento no puede ser anterior a la de compra."}
            )
        return attrs


class BatchUpdateSerializer(serializers.Serializer):
    batch_number = serializers.CharField(max_length=100, required=False)
    supplier = serializers.CharField(max_length=150, required=False, allow_blank=True)
    invoice_ref = serializers.CharField(max_length=100, required=False, allow_blank=True)
    purchase_date = serializers.DateField(required=False, allow_null=True)
    expiry_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    is_active = serializers.BooleanField(required=False)


class BatchAdjustSerializer(serializers.Serializer):
    new_quantity = serializers.DecimalField(max_digits=14, decimal_places=3, min_value=0)
    reason = serializers.CharField(max_length=255)


class ReservationSerializer(PositiveQuantityMixin, serializers.Serializer):
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    order_id = serializers.IntegerField()


class BatchOutputSerializer(PositiveQuantityMixin, serializers.Serializer):
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    production_id = serializers.IntegerField()


class RecipeUpsertSerializer(PositiveQuantityMixin, serializers.Serializer):
    variant = serializers.IntegerField()
    input_variant = serializers.IntegerField()
    quantity = serializers.DecimalField(max_digits=12, decimal_places=4, required=False, default=1)


class AssociateInputsSerializer(PositiveQuantityMixin, serializers.Serializer):
    input_ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=True)
    quantity = serializers.DecimalField(max_digits=12, decimal_places=4, required=False, default=1)


class ConversionCreateSerializer(serializers.Serializer):
    conversion_date = serializers.DateField(required=False, allow_null=True, default=None)
    description = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ConversionFilterSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=ConversionStatus.choices, required=False, allow_blank=True)
    from_date = serializers.DateField(required=False)
    to_date = serializers.DateField(required=False)


class ConversionFromTemplateSerializer(serializers.Serializer):
    template_variant = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1)
    output_variant = serializers.IntegerField(required=False, allow_null=True, default=None)
    conversion_date = serializers.DateField(required=False, allow_null=True, default=None)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class InputItemCreateSerializer(PositiveQuantityMixin, serializers.Serializer):
    input_variant = serializers.IntegerField()
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    notes = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class InputItemUpdateSerializer(PositiveQuantityMixin, serializers.Serializer):
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3, required=False)
    notes = serializers.CharField(max_length=255, required=False, allow_blank=True)


class OutputItemCreateSerializer(PositiveQuantityMixin, serializers.Serializer):
    variant = serializers.IntegerField()
    quantity = serializers.IntegerField()
    notes = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class OutputItemUpdateSerializer(PositiveQuantityMixin, serializers.Serializer):
    quantity = serializers.IntegerField(required=False)
    notes = serializers.CharField(max_length=255, required=False, allow_blank=True)
