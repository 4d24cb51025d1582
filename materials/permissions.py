from rest_framework import permissions

from materials.conf import get_setting


def es_supervisor(user) -> bool:
    """
    Devuelve True si el usuario es superusuario o pertenece a alguno de los
    grupos supervisores configurados en MATERIALS["SUPERVISOR_GROUPS"].
    """
    if user is None or not user.is_authenticated:
        return False

    if user.is_superuser:
        return True

    return user.groups.filter(name__in=get_setting("SUPERVISOR_GROUPS")).exists()


class IsSupervisor(permissions.BasePermission):
    """
    Solo supervisores de inventario (ej: aprobar conversiones).
    """

    message = "Solo un supervisor de inventario puede realizar esta acción."

    def has_permission(self, request, view):
        return es_supervisor(request.user)
