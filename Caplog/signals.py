from __future__ import annotations

import logging
from contextlib import contextmanager

from django.contrib.auth.models import Group
from django.db.models.signals import m2m_changed, pre_delete, pre_save
from django.dispatch import Signal, receiver

from .operations import get_current_operation
from .roles import current_role_model

logger = logging.getLogger(__name__)

# Sent by a subsystem that clears and rebuilds group permissions in one go.
# ``snapshot`` (optional) is the role model before the rewrite began.
bulk_rewrite_started = Signal()
# Sent by the same subsystem once its rewrite is complete.
bulk_rewrite_committed = Signal()


def _notify_current(reason: str) -> None:
    active = get_current_operation()
    if active is None:
        logger.debug("Capability change outside a tracked operation (%s); not logged", reason)
        return
    # The final state is read again at the commit point.
    active.notify(current_role_model)


@receiver(m2m_changed, sender=Group.permissions.through)
def group_permissions_changing(sender, instance, action, **kwargs):
    if action in ("pre_add", "pre_remove", "pre_clear"):
        _notify_current(action)


@receiver(pre_save, sender=Group)
def group_renaming(sender, instance, **kwargs):
    if instance.pk is None or get_current_operation() is None:
        return
    previous = Group.objects.filter(pk=instance.pk).values_list("name", flat=True).first()
    if previous is not None and previous != instance.name:
        _notify_current("rename")


@receiver(pre_delete, sender=Group)
def group_deleting(sender, instance, **kwargs):
    _notify_current("delete")


@receiver(bulk_rewrite_started)
def bulk_rewrite_raised(sender, snapshot=None, **kwargs):
    active = get_current_operation()
    if active is None:
        logger.debug("Bulk rewrite started outside a tracked operation; not logged")
        return
    active.raise_bulk_rewrite(snapshot if snapshot is not None else current_role_model)


@receiver(bulk_rewrite_committed)
def bulk_rewrite_finished(sender, **kwargs):
    active = get_current_operation()
    if active is None:
        return
    active.commit_bulk_rewrite()


@contextmanager
def bulk_rewrite(sender=None):
    """
    Wrap a destructive clear-then-rebuild of group permissions.

    The role model is captured on entry; leaving the block normally is the
    rewrite's commit point. On error the request's own terminal signal
    decides instead.
    """
    bulk_rewrite_started.send(sender=sender)
    yield
    bulk_rewrite_committed.send(sender=sender)
