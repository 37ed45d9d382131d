"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import coerce_datetime, from_epoch_ms, utc_now

__all__ = ["coerce_datetime", "from_epoch_ms", "utc_now"]
