# materials/services/recipes.py

import logging
from decimal import Decimal, InvalidOperation

from django.db import transaction

from materials.exceptions import InventoryValidationError, NotFoundError
from materials.models import (
    Input,
    InputVariant,
    Product,
    ProductVariant,
    TemplateInput,
    TemplateRecipe,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _get_variant(variant_id: int) -> ProductVariant:
    try:
        return ProductVariant.objects.select_related("product", "color", "size").get(pk=variant_id)
    except ProductVariant.DoesNotExist:
        raise NotFoundError("Variante no encontrada.")


def _get_template(product_id: int) -> Product:
    try:
        product = Product.objects.get(pk=product_id)
    except Product.DoesNotExist:
        raise NotFoundError("Producto no encontrado.")
    if not product.is_template:
        raise InventoryValidationError("El producto no es un template.")
    return product


def units_from_recipe(recipe: TemplateRecipe) -> int:
    """
    Unidades terminadas que alcanza a cubrir un ingrediente:
        floor(stock_ingrediente / cantidad_receta)
    Una cantidad de receta <= 0 es un dato inválido: se rechaza, no se divide.
    """
    cantidad = recipe.quantity
    if cantidad is None or cantidad <= 0:
        raise InventoryValidationError(
            f"La receta de {recipe.input_variant} tiene una cantidad inválida ({cantidad})."
        )
    stock = recipe.input_variant.current_stock or ZERO
    if stock <= 0:
        return 0
    return int(stock // cantidad)


def _bottleneck(recipes) -> int:
    if not recipes:
        return 0
    return min(units_from_recipe(r) for r in recipes)


@transaction.atomic
def upsert_recipe(*, variant_id: int, input_variant_id: int, quantity: Decimal = Decimal("1")) -> TemplateRecipe:
    """
    Crea o actualiza la receta (variante del template, variante de insumo).
    """
    variante = _get_variant(variant_id)
    if not variante.product.is_template:
        raise InventoryValidationError("La variante no pertenece a un template.")

    if not InputVariant.objects.filter(pk=input_variant_id).exists():
        raise NotFoundError("Variante de insumo no encontrada.")

    try:
        cantidad = Decimal(str(quantity if quantity is not None else 1))
    except (InvalidOperation, ValueError):
        raise InventoryValidationError("La cantidad de la receta debe ser numérica.")
    if not cantidad.is_finite() or cantidad <= 0:
        raise InventoryValidationError("La cantidad de la receta debe ser mayor a cero.")

    receta, created = TemplateRecipe.objects.update_or_create(
        variant=variante,
        input_variant_id=input_variant_id,
        defaults={"quantity": cantidad},
    )
    logger.info(
        "Receta %s: variante %s requiere %s de variante de insumo %s",
        "creada" if created else "actualizada", variante.sku, cantidad, input_variant_id,
    )
    return receta


def list_recipes(*, variant_id: int | None = None, product_id: int | None = None):
    if (variant_id is None) == (product_id is None):
        raise InventoryValidationError("Debe indicar variant_id o product_id (solo uno).")

    qs = TemplateRecipe.objects.select_related(
        "variant__product",
        "variant__color",
        "variant__size",
        "input_variant__input",
        "input_variant__color",
        "input_variant__size",
    )
    if variant_id is not None:
        return qs.filter(variant_id=variant_id)
    return qs.filter(variant__product_id=product_id)


def delete_recipe(variant_id: int, input_variant_id: int) -> None:
    borrados, _ = TemplateRecipe.objects.filter(
        variant_id=variant_id,
        input_variant_id=input_variant_id,
    ).delete()
    if not borrados:
        raise NotFoundError("Receta no encontrada.")


def delete_all_recipes(variant_id: int) -> int:
    borrados, _ = TemplateRecipe.objects.filter(variant_id=variant_id).delete()
    return borrados


def get_available_stock(variant_id: int) -> int:
    """
    Unidades que todavía se pueden fabricar de una variante de template.

    Regla del cuello de botella: el mínimo de floor(stock / cantidad) entre
    todos los ingredientes, calculado en el momento y nunca guardado.
    """
    if not ProductVariant.objects.filter(pk=variant_id).exists():
        raise NotFoundError("Variante no encontrada.")
    recetas = list(
        TemplateRecipe.objects.select_related("input_variant").filter(variant_id=variant_id)
    )
    return _bottleneck(recetas)


def _recipe_info(recipe: TemplateRecipe) -> dict:
    iv = recipe.input_variant
    return {
        "input_variant_id": iv.id,
        "input_name": iv.input.name,
        "input_color": iv.color.name if iv.color_id else None,
        "input_size": iv.size.name if iv.size_id else None,
        "input_stock": iv.current_stock,
        "quantity": recipe.quantity,
    }


def get_available_stock_for_all_variants(product_id: int) -> list[dict]:
    if not Product.objects.filter(pk=product_id).exists():
        raise NotFoundError("Producto no encontrado.")

    variantes = (
        ProductVariant.objects.filter(product_id=product_id)
        .select_related("color", "size")
        .prefetch_related(
            "template_recipes__input_variant__input",
            "template_recipes__input_variant__color",
            "template_recipes__input_variant__size",
        )
        .order_by("id")
    )

    resultado = []
    for variante in variantes:
        recetas = list(variante.template_recipes.all())
        resultado.append(
            {
                "variant_id": variante.id,
                "sku": variante.sku,
                "color": variante.color.name if variante.color_id else None,
                "size": variante.size.name if variante.size_id else None,
                "recipes": [_recipe_info(r) for r in recetas] if recetas else None,
                "available_stock": _bottleneck(recetas),
            }
        )
    return resultado


def get_variant_stock_by_color_size(
    product_id: int,
    *,
    color_id: int | None = None,
    size_id: int | None = None,
    color_hex: str | None = None,
    size_name: str | None = None,
) -> dict:
    """
    Stock fabricable de la variante de un template buscada por color/talla
    (por id, o por código hex / nombre de talla como llega desde la tienda).
    """
    variante = None
    if color_id is not None or size_id is not None:
        variante = ProductVariant.objects.filter(
            product_id=product_id,
            color_id=color_id,
            size_id=size_id,
        ).first()

    if variante is None and (color_hex or size_name):
        candidatas = ProductVariant.objects.filter(product_id=product_id).select_related("color", "size")
        for v in candidatas:
            color_ok = not color_hex or (
                v.color_id is not None and (v.color.hex_code or "").lower() == color_hex.lower()
            )
            size_ok = not size_name or (
                v.size_id is not None and size_name in (v.size.name, v.size.abbreviation)
            )
            if color_ok and size_ok:
                variante = v
                break

    if variante is None:
        return {"variant_id": None, "sku": "", "available_stock": 0, "recipes": None}

    recetas = list(
        TemplateRecipe.objects.select_related(
            "input_variant__input", "input_variant__color", "input_variant__size"
        ).filter(variant=variante)
    )
    return {
        "variant_id": variante.id,
        "sku": variante.sku,
        "available_stock": _bottleneck(recetas),
        "recipes": [_recipe_info(r) for r in recetas] if recetas else None,
    }


def _match_score(template_variant: ProductVariant, input_variant: InputVariant) -> int | None:
    """
    Puntaje de coincidencia color/talla entre variante de template e insumo.
    None = no coincide. Un color/talla vacío en cualquiera de los dos lados
    acepta cualquier valor; las coincidencias exactas puntúan más.
    """
    puntaje = 0
    for campo in ("color_id", "size_id"):
        valor_template = getattr(template_variant, campo)
        valor_insumo = getattr(input_variant, campo)
        if valor_template is None or valor_insumo is None:
            continue
        if valor_template != valor_insumo:
            return None
        puntaje += 1
    return puntaje


@transaction.atomic
def associate_inputs_to_template(product_id: int, input_ids: list[int], *, quantity: Decimal = Decimal("1")) -> dict:
    """
    Reemplaza los insumos asociados a un template y genera las recetas
    faltantes emparejando, para cada variante del template, la variante de
    cada insumo que mejor coincide en color y talla.
    Las recetas existentes no se modifican.
    """
    product = _get_template(product_id)
    input_ids = list(dict.fromkeys(input_ids))

    existentes = set(Input.objects.filter(pk__in=input_ids).values_list("pk", flat=True))
    faltantes = [i for i in input_ids if i not in existentes]
    if faltantes:
        raise NotFoundError(f"Insumos no encontrados: {', '.join(str(i) for i in faltantes)}")

    cantidad = Decimal(str(quantity))
    if not cantidad.is_finite() or cantidad <= 0:
        raise InventoryValidationError("La cantidad de la receta debe ser mayor a cero.")

    TemplateInput.objects.filter(product=product).delete()
    TemplateInput.objects.bulk_create(
        [TemplateInput(product=product, input_id=input_id) for input_id in input_ids]
    )

    variantes_insumo = list(
        InputVariant.objects.filter(input_id__in=input_ids, is_active=True).order_by("id")
    )
    ya_existen = set(
        TemplateRecipe.objects.filter(variant__product=product).values_list("variant_id", "input_variant_id")
    )

    nuevas = []
    for variante in product.variants.filter(is_active=True).order_by("id"):
        for input_id in input_ids:
            candidatas = []
            for iv in variantes_insumo:
                if iv.input_id != input_id:
                    continue
                puntaje = _match_score(variante, iv)
                if puntaje is not None:
                    candidatas.append((puntaje, iv))
            if not candidatas:
                continue
            # max() se queda con la primera entre empates (la de menor id)
            _, elegida = max(candidatas, key=lambda par: par[0])
            if (variante.id, elegida.id) in ya_existen:
                continue
            nuevas.append(TemplateRecipe(variant=variante, input_variant=elegida, quantity=cantidad))
            ya_existen.add((variante.id, elegida.id))

    TemplateRecipe.objects.bulk_create(nuevas)
    logger.info(
        "Template %s: %s insumos asociados, %s recetas creadas", product.pk, len(input_ids), len(nuevas)
    )
    return {"associated": len(input_ids), "recipes_created": len(nuevas)}


def get_associated_input_ids(product_id: int) -> list[int]:
    return list(
        TemplateInput.objects.filter(product_id=product_id).values_list("input_id", flat=True)
    )


def calculate_recipe_cost(variant_id: int) -> Decimal:
    """
    Costo de insumos para fabricar UNA unidad de la variante:
        suma( cantidad_receta * costo_unitario_insumo )
    Ignora líneas con cantidad <= 0.
    """
    _get_variant(variant_id)
    total = ZERO
    recetas = TemplateRecipe.objects.select_related("input_variant__input").filter(variant_id=variant_id)
    for linea in recetas:
        if not linea.quantity or linea.quantity <= 0:
            continue
        total += linea.quantity * linea.input_variant.effective_unit_cost
    return total.quantize(Decimal("0.0001"))


def calculate_requirements(variant_id: int, quantity: int) -> list[dict]:
    """
    Requerimientos de insumos para fabricar `quantity` unidades de la variante.

    Retorna una lista de diccionarios con:
        {
            "input_variant": <InputVariant>,
            "recipe_quantity": Decimal,
            "required": Decimal,
            "available": Decimal,
            "shortfall": Decimal,
        }
    """
    if quantity is None or int(quantity) <= 0:
        raise InventoryValidationError("La cantidad a fabricar debe ser mayor a cero.")
    _get_variant(variant_id)

    recetas = TemplateRecipe.objects.select_related("input_variant__input").filter(variant_id=variant_id)
    resultado = []
    for linea in recetas:
        if linea.quantity is None or linea.quantity <= 0:
            raise InventoryValidationError(
                f"La receta de {linea.input_variant} tiene una cantidad inválida ({linea.quantity})."
            )
        requerido = linea.quantity * int(quantity)
        disponible = linea.input_variant.current_stock or ZERO
        faltante = requerido - disponible
        resultado.append(
            {
                "input_variant": linea.input_variant,
                "recipe_quantity": linea.quantity,
                "required": requerido,
                "available": disponible,
                "shortfall": faltante if faltante > 0 else ZERO,
            }
        )

    resultado.sort(key=lambda r: r["input_variant"].input.name)
    return resultado
