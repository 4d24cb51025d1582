from datetime import date
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone

from materials.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    InventoryValidationError,
    NotFoundError,
)
from materials.models import (
    Color,
    Size,
    Product,
    ProductVariant,
    ProductVariantMovement,
    Input,
    InputVariant,
    InputVariantMovement,
    InventoryConversion,
    ConversionStatus,
    ConversionType,
    MovementType,
    ReferenceType,
)
from materials.services.conversions import (
    add_input_item,
    add_output_item,
    approve_conversion,
    cancel_conversion,
    create_conversion,
    create_conversion_from_template,
    delete_conversion,
    generate_conversion_number,
    get_conversion,
    get_conversion_stats,
    list_conversions,
    remove_input_item,
    remove_output_item,
    submit_for_approval,
    update_input_item,
    update_output_item,
)
from materials.services.recipes import upsert_recipe
from materials.services.stock import move_input_variant_stock, receive_input_variant_stock

User = get_user_model()


class ConversionBaseTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username="supervisor",
            password="password123",
            first_name="Marta",
            last_name="Soto",
        )

        rojo = Color.objects.create(name="Rojo")
        talla_m = Size.objects.create(name="Mediana", abbreviation="M")
        self.template = Product.objects.create(
            name="Polera Template",
            base_price=Decimal("10000.00"),
            is_template=True,
        )
        self.rojo_m = ProductVariant.objects.create(
            product=self.template, color=rojo, size=talla_m, sku="POL-ROJO-M"
        )

        self.tela = Input.objects.create(
            code="TEL-01", name="Tela Roja", unit_of_measure="metro", unit_cost=Decimal("1500.0000")
        )
        self.tela_roja = InputVariant.objects.create(input=self.tela, color=rojo, sku="TEL-01-ROJO")
        self.botones = Input.objects.create(code="BOT-01", name="Set de botones", unit_cost=Decimal("300.0000"))
        self.set_botones = InputVariant.objects.create(input=self.botones, sku="BOT-01-STD")

        receive_input_variant_stock(input_variant_id=self.tela_roja.pk, quantity=Decimal("10"))
        receive_input_variant_stock(input_variant_id=self.set_botones.pk, quantity=Decimal("3"))

    def conversion_con_items(self):
        conversion = create_conversion(description="Producción manual", user=self.user)
        add_input_item(conversion.pk, input_variant_id=self.tela_roja.pk, quantity=Decimal("4"))
        add_input_item(conversion.pk, input_variant_id=self.set_botones.pk, quantity=Decimal("2"))
        add_output_item(conversion.pk, variant_id=self.rojo_m.pk, quantity=2)
        return conversion


class NumeracionTests(ConversionBaseTestCase):
    def test_numero_correlativo_por_anio(self):
        anio = timezone.localdate().year
        c1 = create_conversion()
        c2 = create_conversion()
        self.assertEqual(c1.conversion_number, f"CONV-{anio}-0001")
        self.assertEqual(c2.conversion_number, f"CONV-{anio}-0002")

    def test_borrar_una_conversion_no_repite_numeros(self):
        anio = timezone.localdate().year
        create_conversion()
        segunda = create_conversion()
        create_conversion()
        delete_conversion(segunda.pk)

        cuarta = create_conversion()
        self.assertEqual(cuarta.conversion_number, f"CONV-{anio}-0004")

    def test_numeracion_reinicia_en_otro_anio(self):
        create_conversion()
        self.assertEqual(generate_conversion_number(year=1999), "CONV-1999-0001")

    def test_numero_tomado_por_otra_transaccion_reintenta(self):
        anio = timezone.localdate().year
        primera = create_conversion()
        with mock.patch(
            "materials.services.conversions.generate_conversion_number",
            side_effect=[primera.conversion_number, f"CONV-{anio}-0002"],
        ):
            segunda = create_conversion()
        self.assertEqual(segunda.conversion_number, f"CONV-{anio}-0002")
        self.assertEqual(InventoryConversion.objects.count(), 2)

    def test_numero_repetido_dos_veces_es_error_de_estado(self):
        primera = create_conversion()
        with mock.patch(
            "materials.services.conversions.generate_conversion_number",
            return_value=primera.conversion_number,
        ):
            with self.assertRaises(InvalidStateError):
                create_conversion()
        self.assertEqual(InventoryConversion.objects.count(), 1)


class ItemsConversionTests(ConversionBaseTestCase):
    def test_crear_conversion_manual_en_borrador(self):
        conversion = create_conversion(conversion_date=date(2025, 3, 1), notes="nota", user=self.user)
        self.assertEqual(conversion.status, ConversionStatus.DRAFT)
        self.assertEqual(conversion.conversion_type, ConversionType.MANUAL)
        self.assertEqual(conversion.created_by_name, "Marta Soto")
        self.assertEqual(conversion.conversion_date, date(2025, 3, 1))

    def test_items_guardan_snapshot_y_recalculan_totales(self):
        conversion = self.conversion_con_items()
        conversion.refresh_from_db()

        item_tela = conversion.input_items.get(input_variant=self.tela_roja)
        self.assertEqual(item_tela.input_code, "TEL-01")
        self.assertEqual(item_tela.variant_sku, "TEL-01-ROJO")
        self.assertEqual(item_tela.unit_of_measure, "metro")
        self.assertEqual(item_tela.total_cost, Decimal("6000.0000"))

        item_salida = conversion.output_items.get()
        self.assertEqual(item_salida.product_name, "Polera Template")
        self.assertEqual(item_salida.color_name, "Rojo")
        self.assertEqual(item_salida.total_value, Decimal("20000.0000"))

        # 4 * 1500 + 2 * 300
        self.assertEqual(conversion.total_input_cost, Decimal("6600.0000"))
        self.assertEqual(conversion.total_output_cost, Decimal("20000.0000"))

    def test_actualizar_y_quitar_items(self):
        conversion = self.conversion_con_items()
        item_tela = conversion.input_items.get(input_variant=self.tela_roja)
        item_salida = conversion.output_items.get()

        update_input_item(conversion.pk, item_tela.pk, quantity=Decimal("1"), notes="menos tela")
        update_output_item(conversion.pk, item_salida.pk, quantity=1)
        conversion.refresh_from_db()
        self.assertEqual(conversion.total_input_cost, Decimal("2100.0000"))
        self.assertEqual(conversion.total_output_cost, Decimal("10000.0000"))

        remove_input_item(conversion.pk, item_tela.pk)
        remove_output_item(conversion.pk, item_salida.pk)
        conversion.refresh_from_db()
        self.assertEqual(conversion.total_input_cost, Decimal("600.0000"))
        self.assertEqual(conversion.total_output_cost, Decimal("0"))

        with self.assertRaises(NotFoundError):
            remove_input_item(conversion.pk, item_tela.pk)

    def test_insumo_duplicado(self):
        conversion = self.conversion_con_items()
        with self.assertRaises(InventoryValidationError):
            add_input_item(conversion.pk, input_variant_id=self.tela_roja.pk, quantity=Decimal("1"))
        with self.assertRaises(InventoryValidationError):
            add_output_item(conversion.pk, variant_id=self.rojo_m.pk, quantity=1)

    def test_insumo_sin_stock_suficiente(self):
        conversion = create_conversion()
        with self.assertRaises(InsufficientStockError):
            add_input_item(conversion.pk, input_variant_id=self.set_botones.pk, quantity=Decimal("4"))
        self.assertFalse(conversion.input_items.exists())

    def test_cantidades_deben_ser_positivas(self):
        conversion = create_conversion()
        with self.assertRaises(InventoryValidationError):
            add_input_item(conversion.pk, input_variant_id=self.tela_roja.pk, quantity=Decimal("0"))
        with self.assertRaises(InventoryValidationError):
            add_output_item(conversion.pk, variant_id=self.rojo_m.pk, quantity=0)

    def test_cantidades_no_finitas_son_invalidas(self):
        conversion = create_conversion()
        for valor in (Decimal("NaN"), Decimal("Infinity"), "nan"):
            with self.subTest(valor=valor):
                with self.assertRaises(InventoryValidationError):
                    add_input_item(conversion.pk, input_variant_id=self.tela_roja.pk, quantity=valor)
        with self.assertRaises(InventoryValidationError):
            add_output_item(conversion.pk, variant_id=self.rojo_m.pk, quantity=float("inf"))
        self.assertFalse(conversion.input_items.exists())

    def test_items_solo_en_borrador(self):
        conversion = self.conversion_con_items()
        submit_for_approval(conversion.pk)
        item_tela = conversion.input_items.get(input_variant=self.tela_roja)

        with self.assertRaises(InvalidStateError):
            add_output_item(conversion.pk, variant_id=self.rojo_m.pk, quantity=1)
        with self.assertRaises(InvalidStateError):
            update_input_item(conversion.pk, item_tela.pk, quantity=Decimal("1"))
        with self.assertRaises(InvalidStateError):
            remove_input_item(conversion.pk, item_tela.pk)

    def test_conversion_inexistente(self):
        with self.assertRaises(NotFoundError):
            add_input_item(999999, input_variant_id=self.tela_roja.pk, quantity=Decimal("1"))
        with self.assertRaises(NotFoundError):
            get_conversion(999999)


class EnvioAprobacionTests(ConversionBaseTestCase):
    def test_requiere_items(self):
        conversion = create_conversion()
        with self.assertRaises(InventoryValidationError):
            submit_for_approval(conversion.pk)

        add_input_item(conversion.pk, input_variant_id=self.tela_roja.pk, quantity=Decimal("1"))
        with self.assertRaises(InventoryValidationError):
            submit_for_approval(conversion.pk)

        conversion.refresh_from_db()
        self.assertEqual(conversion.status, ConversionStatus.DRAFT)

    def test_falta_de_stock_al_enviar(self):
        conversion = self.conversion_con_items()
        move_input_variant_stock(
            input_variant_id=self.set_botones.pk,
            delta=Decimal("-2"),
            movement_type=MovementType.SALIDA,
        )
        with self.assertRaises(InsufficientStockError) as ctx:
            submit_for_approval(conversion.pk)
        self.assertEqual(ctx.exception.shortfall, Decimal("1"))

    def test_envio_exitoso(self):
        conversion = self.conversion_con_items()
        conversion = submit_for_approval(conversion.pk)
        self.assertEqual(conversion.status, ConversionStatus.PENDING)

        with self.assertRaises(InvalidStateError):
            submit_for_approval(conversion.pk)


class AprobacionTests(ConversionBaseTestCase):
    def test_solo_se_aprueban_pendientes(self):
        conversion = self.conversion_con_items()
        with self.assertRaises(InvalidStateError):
            approve_conversion(conversion.pk, user=self.user)

    def test_aprobar_aplica_inventario(self):
        conversion = self.conversion_con_items()
        submit_for_approval(conversion.pk)
        conversion = approve_conversion(conversion.pk, user=self.user)

        self.assertEqual(conversion.status, ConversionStatus.APPROVED)
        self.assertEqual(conversion.approved_by_id, self.user.pk)
        self.assertEqual(conversion.approved_by_name, "Marta Soto")
        self.assertIsNotNone(conversion.approved_at)

        self.tela_roja.refresh_from_db()
        self.set_botones.refresh_from_db()
        self.rojo_m.refresh_from_db()
        self.assertEqual(self.tela_roja.current_stock, Decimal("6.000"))
        self.assertEqual(self.set_botones.current_stock, Decimal("1.000"))
        self.assertEqual(self.rojo_m.stock, 2)

        salida = InputVariantMovement.objects.get(
            input_variant=self.tela_roja, movement_type=MovementType.SALIDA
        )
        self.assertEqual(salida.quantity, Decimal("-4.000"))
        self.assertEqual(salida.reference_type, ReferenceType.CONVERSION)
        self.assertEqual(salida.reference_id, conversion.pk)

        entrada = ProductVariantMovement.objects.get(variant=self.rojo_m)
        self.assertEqual(entrada.movement_type, MovementType.ENTRADA)
        self.assertEqual(entrada.previous_stock, 0)
        self.assertEqual(entrada.new_stock, 2)

        # El stock del insumo padre se recalcula desde sus variantes
        self.tela.refresh_from_db()
        self.assertEqual(self.tela.current_stock, Decimal("6.000"))

    def test_faltante_al_aprobar_no_aplica_nada(self):
        conversion = self.conversion_con_items()
        submit_for_approval(conversion.pk)
        move_input_variant_stock(
            input_variant_id=self.set_botones.pk,
            delta=Decimal("-3"),
            movement_type=MovementType.SALIDA,
        )

        with self.assertRaises(InsufficientStockError):
            approve_conversion(conversion.pk, user=self.user)

        conversion.refresh_from_db()
        self.tela_roja.refresh_from_db()
        self.rojo_m.refresh_from_db()
        self.assertEqual(conversion.status, ConversionStatus.PENDING)
        self.assertEqual(self.tela_roja.current_stock, Decimal("10.000"))
        self.assertEqual(self.rojo_m.stock, 0)

    def test_error_a_mitad_de_aprobacion_revierte_todo(self):
        conversion = self.conversion_con_items()
        submit_for_approval(conversion.pk)

        with mock.patch(
            "materials.services.conversions.move_product_variant_stock",
            side_effect=InvalidStateError("falla simulada"),
        ):
            with self.assertRaises(InvalidStateError):
                approve_conversion(conversion.pk, user=self.user)

        conversion.refresh_from_db()
        self.tela_roja.refresh_from_db()
        self.set_botones.refresh_from_db()
        self.assertEqual(conversion.status, ConversionStatus.PENDING)
        self.assertEqual(self.tela_roja.current_stock, Decimal("10.000"))
        self.assertEqual(self.set_botones.current_stock, Decimal("3.000"))
        self.assertFalse(
            InputVariantMovement.objects.filter(reference_type=ReferenceType.CONVERSION).exists()
        )


class CancelarYEliminarTests(ConversionBaseTestCase):
    def test_cancelar_desde_borrador_y_pendiente(self):
        borrador = create_conversion()
        borrador = cancel_conversion(borrador.pk)
        self.assertEqual(borrador.status, ConversionStatus.CANCELLED)
        self.assertIsNotNone(borrador.cancelled_at)

        pendiente = self.conversion_con_items()
        submit_for_approval(pendiente.pk)
        self.assertEqual(cancel_conversion(pendiente.pk).status, ConversionStatus.CANCELLED)

        # Cancelar no toca stock
        self.tela_roja.refresh_from_db()
        self.assertEqual(self.tela_roja.current_stock, Decimal("10.000"))

    def test_estados_terminales_no_se_cancelan(self):
        conversion = create_conversion()
        cancel_conversion(conversion.pk)
        with self.assertRaises(InvalidStateError):
            cancel_conversion(conversion.pk)

        aprobada = self.conversion_con_items()
        submit_for_approval(aprobada.pk)
        approve_conversion(aprobada.pk, user=self.user)
        with self.assertRaises(InvalidStateError):
            cancel_conversion(aprobada.pk)

    def test_eliminar_solo_borrador_o_cancelada(self):
        pendiente = self.conversion_con_items()
        submit_for_approval(pendiente.pk)
        with self.assertRaises(InvalidStateError):
            delete_conversion(pendiente.pk)

        cancel_conversion(pendiente.pk)
        delete_conversion(pendiente.pk)
        self.assertFalse(InventoryConversion.objects.filter(pk=pendiente.pk).exists())


class ConversionDesdeTemplateTests(ConversionBaseTestCase):
    def setUp(self):
        super().setUp()
        upsert_recipe(variant_id=self.rojo_m.pk, input_variant_id=self.tela_roja.pk, quantity=Decimal("2"))
        upsert_recipe(variant_id=self.rojo_m.pk, input_variant_id=self.set_botones.pk, quantity=Decimal("1"))

    def test_ejemplo_tres_unidades(self):
        conversion = create_conversion_from_template(
            template_variant_id=self.rojo_m.pk,
            quantity=3,
            user=self.user,
        )
        self.assertEqual(conversion.conversion_type, ConversionType.TEMPLATE)
        self.assertEqual(conversion.template_variant, self.rojo_m)
        self.assertEqual(conversion.status, ConversionStatus.DRAFT)

        cantidades = {i.input_variant_id: i.quantity for i in conversion.input_items.all()}
        self.assertEqual(cantidades[self.tela_roja.pk], Decimal("6"))
        self.assertEqual(cantidades[self.set_botones.pk], Decimal("3"))

        salida = conversion.output_items.get()
        self.assertEqual(salida.variant, self.rojo_m)
        self.assertEqual(salida.quantity, 3)

        submit_for_approval(conversion.pk)
        approve_conversion(conversion.pk, user=self.user)

        self.tela_roja.refresh_from_db()
        self.set_botones.refresh_from_db()
        self.rojo_m.refresh_from_db()
        self.assertEqual(self.tela_roja.current_stock, Decimal("4.000"))
        self.assertEqual(self.set_botones.current_stock, Decimal("0.000"))
        self.assertEqual(self.rojo_m.stock, 3)

    def test_variante_destino_distinta(self):
        otra = ProductVariant.objects.create(product=self.template, sku="POL-ROJO-M-B")
        conversion = create_conversion_from_template(
            template_variant_id=self.rojo_m.pk,
            quantity=1,
            output_variant_id=otra.pk,
        )
        self.assertEqual(conversion.output_items.get().variant, otra)

    def test_stock_insuficiente(self):
        with self.assertRaises(InsufficientStockError) as ctx:
            create_conversion_from_template(template_variant_id=self.rojo_m.pk, quantity=4)
        self.assertEqual(ctx.exception.shortfall, Decimal("1"))
        self.assertFalse(InventoryConversion.objects.exists())

    def test_ingrediente_inactivo_es_rechazado(self):
        InputVariant.objects.filter(pk=self.set_botones.pk).update(is_active=False)
        with self.assertRaises(InventoryValidationError):
            create_conversion_from_template(template_variant_id=self.rojo_m.pk, quantity=1)
        self.assertFalse(InventoryConversion.objects.exists())

    def test_requiere_template_con_receta(self):
        normal = Product.objects.create(name="Taza", is_template=False)
        taza = ProductVariant.objects.create(product=normal, sku="TAZA-1")
        with self.assertRaises(InventoryValidationError):
            create_conversion_from_template(template_variant_id=taza.pk, quantity=1)

        sin_receta = ProductVariant.objects.create(product=self.template, sku="POL-SIN-RECETA")
        with self.assertRaises(InventoryValidationError):
            create_conversion_from_template(template_variant_id=sin_receta.pk, quantity=1)

        with self.assertRaises(InventoryValidationError):
            create_conversion_from_template(template_variant_id=self.rojo_m.pk, quantity=0)


class ConsultasConversionTests(ConversionBaseTestCase):
    def test_listado_con_filtros(self):
        c1 = create_conversion(conversion_date=date(2025, 1, 10))
        c2 = create_conversion(conversion_date=date(2025, 2, 10))
        cancel_conversion(c2.pk)

        self.assertEqual(list_conversions().count(), 2)
        self.assertEqual(
            [c.pk for c in list_conversions(status=ConversionStatus.CANCELLED)],
            [c2.pk],
        )
        self.assertEqual(
            [c.pk for c in list_conversions(to_date=date(2025, 1, 31))],
            [c1.pk],
        )
        self.assertEqual(
            [c.pk for c in list_conversions(from_date=date(2025, 2, 1))],
            [c2.pk],
        )
        with self.assertRaises(InventoryValidationError):
            list_conversions(status="ARCHIVADA")

    def test_estadisticas(self):
        create_conversion()
        aprobada = self.conversion_con_items()
        submit_for_approval(aprobada.pk)
        approve_conversion(aprobada.pk, user=self.user)

        stats = get_conversion_stats()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["by_status"][ConversionStatus.DRAFT], 1)
        self.assertEqual(stats["by_status"][ConversionStatus.APPROVED], 1)
        self.assertEqual(stats["by_status"][ConversionStatus.PENDING], 0)
        self.assertEqual(stats["total_input_cost"], Decimal("6600.0000"))
        self.assertEqual(stats["total_output_value"], Decimal("20000.0000"))
        self.assertIsNotNone(stats["last_approved_at"])
