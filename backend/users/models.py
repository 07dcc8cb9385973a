from __future__ import annotations

from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    """Platform account; the same user can book stays as a guest and list them as a host."""

    @property
    def display_name(self) -> str:
        return self.get_full_name() or self.username
