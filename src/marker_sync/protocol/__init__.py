"""Marker data model and wire frames."""

from .messages import *  # noqa: F401,F403
from .messages import __all__ as _messages_all
from .models import *  # noqa: F401,F403
from .models import __all__ as _models_all

__all__ = sorted(set(_messages_all) | set(_models_all))
