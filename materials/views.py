from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from materials.conf import get_setting
from materials.exceptions import InventoryValidationError
from materials.models import Input, InputBatch
from materials.permissions import IsSupervisor
from materials.serializers import (
    AssociateInputsSerializer,
    BatchAdjustSerializer,
    BatchCreateSerializer,
    BatchOutputSerializer,
    BatchUpdateSerializer,
    ConversionCreateSerializer,
    ConversionFilterSerializer,
    ConversionFromTemplateSerializer,
    InputBatchMovementSerializer,
    InputBatchSerializer,
    InputItemCreateSerializer,
    InputItemUpdateSerializer,
    InputSerializer,
    InventoryConversionSerializer,
    OutputItemCreateSerializer,
    OutputItemUpdateSerializer,
    RecipeUpsertSerializer,
    ReservationSerializer,
    TemplateRecipeSerializer,
)
from materials.services import batches, conversions, recipes, stock


def _int_param(request, nombre: str):
    valor = request.query_params.get(nombre)
    if valor in (None, ""):
        return None
    try:
        return int(valor)
    except ValueError:
        raise InventoryValidationError(f"El parámetro '{nombre}' debe ser un entero.")


class EnvelopeMixin:
    """
    Envuelve las respuestas exitosas en {"success": true, "data": ...}.
    Los errores ya salen envueltos desde materials.api_errors.
    """

    def finalize_response(self, request, response, *args, **kwargs):
        if (
            isinstance(response, Response)
            and response.status_code < 400
            and response.status_code != status.HTTP_204_NO_CONTENT
            and not (isinstance(response.data, dict) and "success" in response.data)
        ):
            response.data = {"success": True, "data": response.data}
        return super().finalize_response(request, response, *args, **kwargs)


# ---------------------------------------------------------------------------
# Insumos y lotes
# ---------------------------------------------------------------------------

class InputViewSet(EnvelopeMixin, viewsets.ReadOnlyModelViewSet):
    queryset = Input.objects.all().prefetch_related("variants__color", "variants__size")
    serializer_class = InputSerializer
    permission_classes = [permissions.IsAuthenticatedOrReadOnly]
    lookup_value_regex = r"\d+"

    def get_queryset(self):
        qs = super().get_queryset()
        activo = self.request.query_params.get("is_active")
        if activo is not None:
            qs = qs.filter(is_active=activo.lower() in ("1", "true"))
        return qs

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        """
        GET /api/inputs/low-stock/
        """
        return Response(InputSerializer(stock.list_low_stock(), many=True).data)

    @action(detail=True, methods=["post"], url_path="recalculate-stock")
    def recalculate_stock(self, request, pk=None):
        material = stock.recalculate_input_stock(self.get_object().pk)
        return Response(InputSerializer(material).data)

    @action(detail=True, methods=["get"], url_path="movements")
    def movements(self, request, pk=None):
        material = self.get_object()
        movimientos = batches.list_movements(input_id=material.pk, limit=_int_param(request, "limit"))
        return Response(InputBatchMovementSerializer(movimientos, many=True).data)


class InputBatchViewSet(EnvelopeMixin, viewsets.ViewSet):
    """
    Lotes de insumos. Las cantidades solo cambian por las acciones
    adjust / reserve / release / output, cada una con su movimiento.
    """

    permission_classes = [permissions.IsAuthenticatedOrReadOnly]
    lookup_value_regex = r"\d+"

    def list(self, request):
        input_id = _int_param(request, "input")
        incluir_inactivos = request.query_params.get("include_inactive", "").lower() in ("1", "true")
        if input_id is not None:
            lotes = batches.list_batches_by_input(input_id, include_inactive=incluir_inactivos)
        else:
            lotes = InputBatch.objects.select_related("input").order_by("-created_at", "-id")
            if not incluir_inactivos:
                lotes = lotes.filter(is_active=True)
        return Response(InputBatchSerializer(lotes, many=True).data)

    def retrieve(self, request, pk=None):
        lote = batches.get_batch(pk)
        movimientos = batches.list_movements(batch_id=lote.pk, limit=get_setting("BATCH_MOVEMENTS_IN_DETAIL"))
        data = InputBatchSerializer(lote).data
        data["movements"] = InputBatchMovementSerializer(movimientos, many=True).data
        return Response(data)

    def create(self, request):
        serializer = BatchCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        lote = batches.create_batch(
            input_id=data["input"],
            batch_number=data["batch_number"],
            initial_quantity=data["initial_quantity"],
            unit_cost=data["unit_cost"],
            supplier=data["supplier"],
            invoice_ref=data["invoice_ref"],
            purchase_date=data["purchase_date"],
            expiry_date=data["expiry_date"],
            notes=data["notes"],
            user=request.user,
        )
        return Response(InputBatchSerializer(lote).data, status=status.HTTP_201_CREATED)

    def partial_update(self, request, pk=None):
        serializer = BatchUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        lote = batches.update_batch(pk, **serializer.validated_data)
        return Response(InputBatchSerializer(lote).data)

    @action(detail=True, methods=["post"], url_path="adjust")
    def adjust(self, request, pk=None):
        """
        POST /api/input-batches/<id>/adjust/  {"new_quantity": ..., "reason": ...}
        """
        serializer = BatchAdjustSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        lote = batches.adjust_batch_quantity(
            pk,
            new_quantity=serializer.validated_data["new_quantity"],
            reason=serializer.validated_data["reason"],
            user=request.user,
        )
        return Response(InputBatchSerializer(lote).data)

    @action(detail=True, methods=["post"], url_path="reserve")
    def reserve(self, request, pk=None):
        serializer = ReservationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        lote = batches.reserve_from_batch(
            pk,
            quantity=serializer.validated_data["quantity"],
            order_id=serializer.validated_data["order_id"],
            user=request.user,
        )
        return Response(InputBatchSerializer(lote).data)

    @action(detail=True, methods=["post"], url_path="release")
    def release(self, request, pk=None):
        serializer = ReservationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        lote = batches.release_reservation(
            pk,
            quantity=serializer.validated_data["quantity"],
            order_id=serializer.validated_data["order_id"],
            user=request.user,
        )
        return Response(InputBatchSerializer(lote).data)

    @action(detail=True, methods=["post"], url_path="output")
    def output(self, request, pk=None):
        serializer = BatchOutputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        lote = batches.record_output(
            pk,
            quantity=serializer.validated_data["quantity"],
            production_id=serializer.validated_data["production_id"],
            user=request.user,
        )
        return Response(InputBatchSerializer(lote).data)

    @action(detail=True, methods=["get"], url_path="movements")
    def movements(self, request, pk=None):
        lote = batches.get_batch(pk)
        movimientos = batches.list_movements(batch_id=lote.pk, limit=_int_param(request, "limit"))
        return Response(InputBatchMovementSerializer(movimientos, many=True).data)

    @action(detail=False, methods=["get"], url_path="expiring")
    def expiring(self, request):
        lotes = batches.list_expiring_batches(days=_int_param(request, "days"))
        return Response(InputBatchSerializer(lotes, many=True).data)

    @action(detail=False, methods=["get"], url_path="expired")
    def expired(self, request):
        return Response(InputBatchSerializer(batches.list_expired_batches(), many=True).data)


class MovementViewSet(EnvelopeMixin, viewsets.ViewSet):
    """
    Feed combinado de movimientos (lotes + variantes de insumo).
    """

    permission_classes = [permissions.IsAuthenticatedOrReadOnly]
    lookup_value_regex = r"\d+"

    def list(self, request):
        movimientos = batches.list_all_movements(
            input_id=_int_param(request, "input"),
            movement_type=request.query_params.get("movement_type") or None,
            reference_type=request.query_params.get("reference_type") or None,
            limit=_int_param(request, "limit"),
        )
        return Response(movimientos)

    @action(detail=False, methods=["get"], url_path="stats")
    def stats(self, request):
        return Response(batches.get_movement_stats())


# ---------------------------------------------------------------------------
# Recetas de templates
# ---------------------------------------------------------------------------

class TemplateRecipeViewSet(EnvelopeMixin, viewsets.ViewSet):
    permission_classes = [permissions.IsAuthenticatedOrReadOnly]
    lookup_value_regex = r"\d+"

    def list(self, request):
        recetas = recipes.list_recipes(
            variant_id=_int_param(request, "variant"),
            product_id=_int_param(request, "product"),
        )
        return Response(TemplateRecipeSerializer(recetas, many=True).data)

    def create(self, request):
        """
        Crea o actualiza la línea (variant, input_variant).
        """
        serializer = RecipeUpsertSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        receta = recipes.upsert_recipe(
            variant_id=serializer.validated_data["variant"],
            input_variant_id=serializer.validated_data["input_variant"],
            quantity=serializer.validated_data["quantity"],
        )
        return Response(TemplateRecipeSerializer(receta).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["delete"], url_path=r"(?P<variant_id>\d+)/(?P<input_variant_id>\d+)")
    def remove(self, request, variant_id=None, input_variant_id=None):
        recipes.delete_recipe(int(variant_id), int(input_variant_id))
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["get"], url_path=r"available-stock/(?P<variant_id>\d+)")
    def available_stock(self, request, variant_id=None):
        disponible = recipes.get_available_stock(int(variant_id))
        return Response({"variant_id": int(variant_id), "available_stock": disponible})

    @action(detail=False, methods=["get"], url_path=r"products/(?P<product_id>\d+)/available-stock")
    def product_available_stock(self, request, product_id=None):
        return Response(recipes.get_available_stock_for_all_variants(int(product_id)))

    @action(detail=False, methods=["get"], url_path=r"products/(?P<product_id>\d+)/variant-stock")
    def variant_stock(self, request, product_id=None):
        return Response(
            recipes.get_variant_stock_by_color_size(
                int(product_id),
                color_id=_int_param(request, "color"),
                size_id=_int_param(request, "size"),
                color_hex=request.query_params.get("color_hex") or None,
                size_name=request.query_params.get("size_name") or None,
            )
        )

    @action(detail=False, methods=["post"], url_path=r"products/(?P<product_id>\d+)/associate-inputs")
    def associate_inputs(self, request, product_id=None):
        serializer = AssociateInputsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        resultado = recipes.associate_inputs_to_template(
            int(product_id),
            serializer.validated_data["input_ids"],
            quantity=serializer.validated_data["quantity"],
        )
        return Response(resultado)

    @action(detail=False, methods=["get"], url_path=r"cost/(?P<variant_id>\d+)")
    def cost(self, request, variant_id=None):
        costo = recipes.calculate_recipe_cost(int(variant_id))
        return Response({"variant_id": int(variant_id), "recipe_cost": str(costo)})


# ---------------------------------------------------------------------------
# Conversiones de inventario
# ---------------------------------------------------------------------------

class InventoryConversionViewSet(EnvelopeMixin, viewsets.ViewSet):
    """
    Flujo DRAFT → PENDING → APPROVED (o CANCELLED).
    Los endpoints de items devuelven la conversión completa actualizada.
    """

    permission_classes = [permissions.IsAuthenticatedOrReadOnly]
    lookup_value_regex = r"\d+"

    def _detail(self, conversion_id, status_code=status.HTTP_200_OK):
        conversion = conversions.get_conversion(conversion_id)
        return Response(InventoryConversionSerializer(conversion).data, status=status_code)

    def list(self, request):
        serializer = ConversionFilterSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        qs = conversions.list_conversions(
            status=serializer.validated_data.get("status") or None,
            from_date=serializer.validated_data.get("from_date"),
            to_date=serializer.validated_data.get("to_date"),
        )
        return Response(InventoryConversionSerializer(qs, many=True).data)

    def retrieve(self, request, pk=None):
        return self._detail(pk)

    def create(self, request):
        serializer = ConversionCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        conversion = conversions.create_conversion(user=request.user, **serializer.validated_data)
        return self._detail(conversion.pk, status.HTTP_201_CREATED)

    def destroy(self, request, pk=None):
        conversions.delete_conversion(pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["post"], url_path="from-template")
    def from_template(self, request):
        serializer = ConversionFromTemplateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        conversion = conversions.create_conversion_from_template(
            template_variant_id=data["template_variant"],
            quantity=data["quantity"],
            output_variant_id=data["output_variant"],
            conversion_date=data["conversion_date"],
            notes=data["notes"],
            user=request.user,
        )
        return self._detail(conversion.pk, status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="input-items")
    def add_input_item(self, request, pk=None):
        serializer = InputItemCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        conversions.add_input_item(
            pk,
            input_variant_id=serializer.validated_data["input_variant"],
            quantity=serializer.validated_data["quantity"],
            notes=serializer.validated_data["notes"],
        )
        return self._detail(pk, status.HTTP_201_CREATED)

    @action(detail=True, methods=["patch", "delete"], url_path=r"input-items/(?P<item_id>\d+)")
    def input_item(self, request, pk=None, item_id=None):
        if request.method == "DELETE":
            conversions.remove_input_item(pk, int(item_id))
            return self._detail(pk)

        serializer = InputItemUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        conversions.update_input_item(
            pk,
            int(item_id),
            quantity=serializer.validated_data.get("quantity"),
            notes=serializer.validated_data.get("notes"),
        )
        return self._detail(pk)

    @action(detail=True, methods=["post"], url_path="output-items")
    def add_output_item(self, request, pk=None):
        serializer = OutputItemCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        conversions.add_output_item(
            pk,
            variant_id=serializer.validated_data["variant"],
            quantity=serializer.validated_data["quantity"],
            notes=serializer.validated_data["notes"],
        )
        return self._detail(pk, status.HTTP_201_CREATED)

    @action(detail=True, methods=["patch", "delete"], url_path=r"output-items/(?P<item_id>\d+)")
    def output_item(self, request, pk=None, item_id=None):
        if request.method == "DELETE":
            conversions.remove_output_item(pk, int(item_id))
            return self._detail(pk)

        serializer = OutputItemUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        conversions.update_output_item(
            pk,
            int(item_id),
            quantity=serializer.validated_data.get("quantity"),
            notes=serializer.validated_data.get("notes"),
        )
        return self._detail(pk)

    @action(detail=True, methods=["post"], url_path="submit")
    def submit(self, request, pk=None):
        conversions.submit_for_approval(pk)
        return self._detail(pk)

    @action(detail=True, methods=["post"], url_path="approve", permission_classes=[IsSupervisor])
    def approve(self, request, pk=None):
        """
        POST /api/inventory-conversions/<id>/approve/
        Aplica el inventario. Solo supervisores.
        """
        conversions.approve_conversion(pk, user=request.user)
        return self._detail(pk)

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        conversions.cancel_conversion(pk)
        return self._detail(pk)

    @action(detail=False, methods=["get"], url_path="stats")
    def stats(self, request):
        return Response(conversions.get_conversion_stats())
