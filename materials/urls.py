from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import (
    InputViewSet,
    InputBatchViewSet,
    MovementViewSet,
    TemplateRecipeViewSet,
    InventoryConversionViewSet,
)

router = DefaultRouter()
router.register(r"inputs", InputViewSet, basename="input")
router.register(r"input-batches", InputBatchViewSet, basename="input-batch")
router.register(r"movements", MovementViewSet, basename="movement")
router.register(r"template-recipes", TemplateRecipeViewSet, basename="template-recipe")
router.register(r"inventory-conversions", InventoryConversionViewSet, basename="inventory-conversion")


urlpatterns = [
    path("", include(router.urls)),
]
