"""
Reusable model mixins.

Mixins:
    UUIDPrimaryKeyMixin: Replace the auto-increment id with a UUID

Usage:
    class Payment(UUIDPrimaryKeyMixin, BaseModel):
        ...
"""

from __future__ import annotations

import uuid

from django.db import models


class UUIDPrimaryKeyMixin(models.Model):
    """
    Mixin that uses a random UUID as the primary key.

    UUIDs are safe to expose in URLs and to hand to external processors
    as metadata, since they are not guessable or sequential.

    Fields:
        id: UUID primary key (auto-generated)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier (UUID)",
    )

    class Meta:
        abstract = True
