from django.conf import settings

DEFAULTS = {
    "CONVERSION_NUMBER_PREFIX": "CONV",
    "MOVEMENTS_DEFAULT_LIMIT": 100,
    "BATCH_MOVEMENTS_IN_DETAIL": 50,
    "EXPIRY_WARNING_DAYS": 7,
    "SUPERVISOR_GROUPS": ["SupervisorInventario", "Administrador"],
}


def get_setting(nombre: str):
    """
    Lee un parámetro del dict MATERIALS de settings, con fallback a DEFAULTS.
    """
    valores = getattr(settings, "MATERIALS", {}) or {}
    if nombre in valores:
        return valores[nombre]
    return DEFAULTS[nombre]
