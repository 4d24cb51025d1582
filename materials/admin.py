from django import forms
from django.contrib import admin, messages

from .exceptions import InventoryError
from .models import (
    Color,
    Size,
    Product,
    ProductVariant,
    ProductVariantMovement,
    Input,
    InputVariant,
    InputVariantMovement,
    InputBatch,
    InputBatchMovement,
    TemplateInput,
    TemplateRecipe,
    InventoryConversion,
    ConversionInputItem,
    ConversionOutputItem,
    ConversionStatus,
)
from .permissions import es_supervisor
from .services.batches import EDITABLE_BATCH_FIELDS, create_batch, update_batch
from .services.conversions import approve_conversion, cancel_conversion, delete_conversion


admin.site.site_header = "Administración de Insumos"
admin.site.site_title = "Insumos"


def aprobar_conversiones(modeladmin, request, queryset):
    """
    Acción admin: aprueba conversiones pendientes (solo supervisores).
    """
    if not es_supervisor(request.user):
        messages.error(request, "Solo un supervisor de inventario puede aprobar conversiones.")
        return

    exitosas = 0
    for conversion in queryset.filter(status=ConversionStatus.PENDING):
        try:
            approve_conversion(conversion.pk, user=request.user)
        except InventoryError as exc:
            messages.error(request, f"{conversion.conversion_number}: {exc.message}")
            continue
        exitosas += 1

    if exitosas:
        messages.success(request, f"{exitosas} conversiones aprobadas.")


def cancelar_conversiones(modeladmin, request, queryset):
    canceladas = 0
    for conversion in queryset.filter(status__in=[ConversionStatus.DRAFT, ConversionStatus.PENDING]):
        cancel_conversion(conversion.pk)
        canceladas += 1
    if canceladas:
        messages.success(request, f"{canceladas} conversiones canceladas.")


class ReadOnlyMovementAdmin(admin.ModelAdmin):
    """
    Los movimientos son hechos inmutables: solo consulta.
    """

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Color)
class ColorAdmin(admin.ModelAdmin):
    list_display = ("name", "hex_code")
    search_fields = ("name",)


@admin.register(Size)
class SizeAdmin(admin.ModelAdmin):
    list_display = ("name", "abbreviation", "sort_order")
    search_fields = ("name", "abbreviation")


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "base_price", "is_template", "is_active")
    list_filter = ("is_template", "is_active")
    search_fields = ("name",)


@admin.register(ProductVariant)
class ProductVariantAdmin(admin.ModelAdmin):
    list_display = ("sku", "product", "color", "size", "stock", "is_active")
    list_filter = ("is_active", "product")
    search_fields = ("sku", "product__name")
    readonly_fields = ("stock",)


@admin.register(Input)
class InputAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "unit_of_measure", "current_stock", "min_stock", "is_active")
    list_filter = ("is_active", "unit_of_measure")
    search_fields = ("code", "name")
    readonly_fields = ("current_stock", "created_at", "updated_at")


@admin.register(InputVariant)
class InputVariantAdmin(admin.ModelAdmin):
    list_display = ("sku", "input", "color", "size", "current_stock", "is_active")
    list_filter = ("is_active",)
    search_fields = ("sku", "input__name", "input__code")
    readonly_fields = ("current_stock",)


class InputBatchAdminForm(forms.ModelForm):
    class Meta:
        model = InputBatch
        fields = "__all__"

    def clean_initial_quantity(self):
        cantidad = self.cleaned_data.get("initial_quantity")
        if cantidad is not None and cantidad <= 0:
            raise forms.ValidationError("La cantidad inicial debe ser mayor a 0.")
        return cantidad

    def clean_unit_cost(self):
        costo = self.cleaned_data.get("unit_cost")
        if costo is not None and costo < 0:
            raise forms.ValidationError("El costo unitario no puede ser negativo.")
        return costo

    def clean_batch_number(self):
        numero = self.cleaned_data.get("batch_number")
        # En edición el insumo es de solo lectura y el form no valida el par único
        if numero and self.instance.pk:
            duplicado = (
                InputBatch.objects.filter(input_id=self.instance.input_id, batch_number=numero)
                .exclude(pk=self.instance.pk)
                .exists()
            )
            if duplicado:
                raise forms.ValidationError(f"Ya existe el lote {numero} para este insumo.")
        return numero


@admin.register(InputBatch)
class InputBatchAdmin(admin.ModelAdmin):
    form = InputBatchAdminForm
    list_display = (
        "input",
        "batch_number",
        "supplier",
        "current_quantity",
        "reserved_quantity",
        "expiry_date",
        "is_active",
    )
    list_filter = ("is_active", "input", "expiry_date")
    search_fields = ("input__name", "batch_number", "supplier")
    readonly_fields = ("current_quantity", "reserved_quantity", "total_cost", "created_at", "updated_at")

    def get_readonly_fields(self, request, obj=None):
        base = list(self.readonly_fields)
        if obj is None:
            # Un lote nuevo siempre entra activo
            base.append("is_active")
        else:
            base.extend(["input", "initial_quantity", "unit_cost"])
        return base

    def save_model(self, request, obj, form, change):
        """
        Altas y ediciones pasan por el ledger (movimiento ENTRADA y recálculo
        del stock del insumo).
        """
        if not change:
            lote = create_batch(
                input_id=obj.input_id,
                batch_number=obj.batch_number,
                initial_quantity=obj.initial_quantity,
                unit_cost=obj.unit_cost,
                supplier=obj.supplier,
                invoice_ref=obj.invoice_ref,
                purchase_date=obj.purchase_date,
                expiry_date=obj.expiry_date,
                notes=obj.notes,
                user=request.user,
            )
            obj.pk = lote.pk
            obj.refresh_from_db()
            obj._state.adding = False
            return

        campos = {
            campo: form.cleaned_data[campo]
            for campo in form.changed_data
            if campo in EDITABLE_BATCH_FIELDS
        }
        if campos:
            update_batch(obj.pk, **campos)

    def has_delete_permission(self, request, obj=None):
        # Se desactivan, no se borran
        return False


@admin.register(InputBatchMovement)
class InputBatchMovementAdmin(ReadOnlyMovementAdmin):
    list_display = ("created_at", "input", "batch", "movement_type", "quantity", "new_quantity", "user_name")
    list_filter = ("movement_type", "reference_type")
    search_fields = ("input__name", "batch__batch_number", "reason")


@admin.register(InputVariantMovement)
class InputVariantMovementAdmin(ReadOnlyMovementAdmin):
    list_display = ("created_at", "input_variant", "movement_type", "quantity", "new_stock", "user_name")
    list_filter = ("movement_type", "reference_type")
    search_fields = ("input_variant__sku", "reason")


@admin.register(ProductVariantMovement)
class ProductVariantMovementAdmin(ReadOnlyMovementAdmin):
    list_display = ("created_at", "variant", "movement_type", "quantity", "new_stock", "user_name")
    list_filter = ("movement_type", "reference_type")
    search_fields = ("variant__sku", "reason")


@admin.register(TemplateInput)
class TemplateInputAdmin(admin.ModelAdmin):
    list_display = ("product", "input")


@admin.register(TemplateRecipe)
class TemplateRecipeAdmin(admin.ModelAdmin):
    list_display = ("variant", "input_variant", "quantity")
    search_fields = ("variant__sku", "input_variant__sku")


class ConversionInputItemInline(admin.TabularInline):
    model = ConversionInputItem
    extra = 0
    readonly_fields = ("input_code", "input_name", "variant_sku", "unit_cost", "total_cost")

    # Los items se editan por API (recalculan totales); aquí solo se consultan
    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class ConversionOutputItemInline(ConversionInputItemInline):
    model = ConversionOutputItem
    readonly_fields = ("product_name", "variant_sku", "color_name", "size_name", "unit_price", "total_value")


@admin.register(InventoryConversion)
class InventoryConversionAdmin(admin.ModelAdmin):
    list_display = (
        "conversion_number",
        "conversion_type",
        "status",
        "conversion_date",
        "total_input_cost",
        "total_output_cost",
        "approved_by_name",
    )
    list_filter = ("status", "conversion_type", "conversion_date")
    search_fields = ("conversion_number", "description")
    date_hierarchy = "conversion_date"
    inlines = [ConversionInputItemInline, ConversionOutputItemInline]
    actions = [aprobar_conversiones, cancelar_conversiones]
    readonly_fields = (
        "conversion_number",
        "status",
        "total_input_cost",
        "total_output_cost",
        "created_by_name",
        "approved_by_name",
        "approved_at",
        "cancelled_at",
    )

    def has_add_permission(self, request):
        # Se crean por API para que tengan número y snapshots
        return False

    def has_delete_permission(self, request, obj=None):
        if obj is not None and not obj.can_be_deleted:
            return False
        return super().has_delete_permission(request, obj)

    def get_actions(self, request):
        actions = super().get_actions(request)
        actions.pop("delete_selected", None)
        return actions

    def delete_model(self, request, obj):
        delete_conversion(obj.pk)
