from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group

from .operations import Actor


def permission_name(permission: Any) -> str:
    return f"{permission.content_type.app_label}.{permission.codename}"


def current_role_model() -> dict[str, dict[str, Any]]:
    """Live role model: every group with the permissions it currently holds."""
    model: dict[str, dict[str, Any]] = {}
    groups = Group.objects.order_by("name").prefetch_related("permissions__content_type")
    for group in groups:
        names = sorted(permission_name(permission) for permission in group.permissions.all())
        model[group.name] = {"capabilities": {name: True for name in names}}
    return model


def actor_from_user(user: Any) -> Actor | None:
    if user is None or not getattr(user, "is_authenticated", False):
        return None
    return Actor(id=user.pk, display_name=str(user.get_username() or user.pk))


def resolve_display_names(actor_ids: Iterable[Any]) -> dict[str, str]:
    """Map actor ids (as strings) to usernames; unknown ids are left out."""
    ids = {str(actor_id) for actor_id in actor_ids if actor_id not in (None, "")}
    if not ids:
        return {}
    user_model = get_user_model()
    numeric = [int(actor_id) for actor_id in ids if actor_id.isdigit()]
    names = {}
    for user in user_model.objects.filter(pk__in=numeric):
        names[str(user.pk)] = user.get_username()
    return names
