from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Actor:
    """Who is acting, and for which organization (tenant)."""

    organization_id: int
    user_id: Optional[int] = None
