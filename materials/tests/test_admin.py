from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse

from materials.models import (
    Input,
    InputBatch,
    InputBatchMovement,
    InputVariant,
    InventoryConversion,
    ConversionStatus,
    MovementType,
    Product,
    ProductVariant,
)
from materials.services.batches import create_batch
from materials.services.conversions import (
    add_input_item,
    add_output_item,
    approve_conversion,
    create_conversion,
    submit_for_approval,
)
from materials.services.stock import receive_input_variant_stock

User = get_user_model()


class AdminBaseTestCase(TestCase):
    def setUp(self):
        self.admin = User.objects.create_superuser(
            username="admin",
            password="testpass123",
            email="admin@example.com",
        )
        self.client.force_login(self.admin)
        self.material = Input.objects.create(code="HIL-R", name="Hilo Rojo", unit_of_measure="metro")


class InputBatchAdminTests(AdminBaseTestCase):
    def _datos_lote(self, **extra):
        datos = {
            "input": self.material.pk,
            "batch_number": "L-ADM-1",
            "supplier": "Hilados SA",
            "invoice_ref": "F-100",
            "initial_quantity": "50",
            "unit_cost": "2.5",
            "purchase_date": "",
            "expiry_date": "",
            "notes": "",
        }
        datos.update(extra)
        return datos

    def test_alta_desde_admin_registra_entrada_y_recalcula(self):
        response = self.client.post(reverse("admin:materials_inputbatch_add"), self._datos_lote())
        self.assertEqual(response.status_code, 302)

        lote = InputBatch.objects.get(batch_number="L-ADM-1")
        self.assertEqual(lote.current_quantity, Decimal("50.000"))
        self.assertEqual(lote.reserved_quantity, Decimal("0"))
        self.assertTrue(lote.is_active)

        movimiento = InputBatchMovement.objects.get(batch=lote)
        self.assertEqual(movimiento.movement_type, MovementType.ENTRADA)
        self.assertEqual(movimiento.quantity, Decimal("50.000"))
        self.assertEqual(movimiento.user_name, "admin")

        self.material.refresh_from_db()
        self.assertEqual(self.material.current_stock, Decimal("50.000"))

    def test_alta_con_cantidad_no_positiva_muestra_error(self):
        response = self.client.post(
            reverse("admin:materials_inputbatch_add"),
            self._datos_lote(initial_quantity="0"),
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.context["adminform"].form.errors)
        self.assertFalse(InputBatch.objects.exists())

    def test_desactivar_desde_admin_recalcula_stock(self):
        lote = create_batch(
            input_id=self.material.pk, batch_number="L-1", initial_quantity=Decimal("40"), unit_cost=0
        )
        self.material.refresh_from_db()
        self.assertEqual(self.material.current_stock, Decimal("40.000"))

        # Sin "is_active" en el POST el checkbox queda desmarcado
        response = self.client.post(
            reverse("admin:materials_inputbatch_change", args=[lote.pk]),
            {
                "batch_number": "L-1",
                "supplier": "",
                "invoice_ref": "",
                "purchase_date": "",
                "expiry_date": "",
                "notes": "",
            },
        )
        self.assertEqual(response.status_code, 302)

        lote.refresh_from_db()
        self.assertFalse(lote.is_active)
        self.assertEqual(lote.current_quantity, Decimal("40.000"))
        self.material.refresh_from_db()
        self.assertEqual(self.material.current_stock, Decimal("0.000"))

    def test_edicion_no_cambia_cantidades(self):
        lote = create_batch(
            input_id=self.material.pk, batch_number="L-1", initial_quantity=Decimal("40"), unit_cost=0
        )
        response = self.client.post(
            reverse("admin:materials_inputbatch_change", args=[lote.pk]),
            {
                "batch_number": "L-1",
                "supplier": "Otro",
                "invoice_ref": "",
                "purchase_date": "",
                "expiry_date": "",
                "notes": "",
                "is_active": "on",
                "initial_quantity": "999",
                "current_quantity": "999",
            },
        )
        self.assertEqual(response.status_code, 302)

        lote.refresh_from_db()
        self.assertEqual(lote.supplier, "Otro")
        self.assertEqual(lote.initial_quantity, Decimal("40.000"))
        self.assertEqual(lote.current_quantity, Decimal("40.000"))

    def test_lotes_no_se_eliminan_desde_admin(self):
        lote = create_batch(
            input_id=self.material.pk, batch_number="L-1", initial_quantity=Decimal("40"), unit_cost=0
        )
        response = self.client.post(
            reverse("admin:materials_inputbatch_delete", args=[lote.pk]),
            {"post": "yes"},
        )
        self.assertEqual(response.status_code, 403)
        self.assertTrue(InputBatch.objects.filter(pk=lote.pk).exists())


class InventoryConversionAdminTests(AdminBaseTestCase):
    def setUp(self):
        super().setUp()
        template = Product.objects.create(
            name="Polera Template",
            base_price=Decimal("10000.00"),
            is_template=True,
        )
        self.polera = ProductVariant.objects.create(product=template, sku="POL-ROJO-M")
        tela = Input.objects.create(code="TEL-01", name="Tela", unit_cost=Decimal("1500"))
        self.tela_roja = InputVariant.objects.create(input=tela, sku="TEL-01-ROJO")
        receive_input_variant_stock(input_variant_id=self.tela_roja.pk, quantity=Decimal("10"))

    def _conversion_aprobada(self):
        conversion = create_conversion(description="Producción")
        add_input_item(conversion.pk, input_variant_id=self.tela_roja.pk, quantity=Decimal("4"))
        add_output_item(conversion.pk, variant_id=self.polera.pk, quantity=2)
        submit_for_approval(conversion.pk)
        return approve_conversion(conversion.pk, user=self.admin)

    def test_conversion_aprobada_no_se_elimina(self):
        conversion = self._conversion_aprobada()
        response = self.client.post(
            reverse("admin:materials_inventoryconversion_delete", args=[conversion.pk]),
            {"post": "yes"},
        )
        self.assertEqual(response.status_code, 403)

        conversion.refresh_from_db()
        self.assertEqual(conversion.status, ConversionStatus.APPROVED)

    def test_sin_accion_de_borrado_masivo(self):
        conversion = self._conversion_aprobada()
        self.client.post(
            reverse("admin:materials_inventoryconversion_changelist"),
            {"action": "delete_selected", "_selected_action": [conversion.pk], "post": "yes"},
        )
        self.assertTrue(InventoryConversion.objects.filter(pk=conversion.pk).exists())

        response = self.client.get(reverse("admin:materials_inventoryconversion_changelist"))
        acciones = [nombre for nombre, _ in response.context["action_form"].fields["action"].choices]
        self.assertNotIn("delete_selected", acciones)
        self.assertIn("aprobar_conversiones", acciones)

    def test_borrador_se_elimina(self):
        conversion = create_conversion(description="Borrador")
        response = self.client.post(
            reverse("admin:materials_inventoryconversion_delete", args=[conversion.pk]),
            {"post": "yes"},
        )
        self.assertEqual(response.status_code, 302)
        self.assertFalse(InventoryConversion.objects.filter(pk=conversion.pk).exists())
