"""
Abstract base model for every table in the project.

Domain models combine it with UUIDPrimaryKeyMixin, mixin first:

    class Delivery(UUIDPrimaryKeyMixin, BaseModel):
        ...
"""

from __future__ import annotations

from django.db import models


class BaseModel(models.Model):
    """Adds created_at (indexed) and updated_at; newest rows sort first."""

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{type(self).__name__}(id={self.pk})"
