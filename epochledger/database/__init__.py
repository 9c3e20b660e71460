from .engine import Database, translate_guard_error

__all__ = ["Database", "translate_guard_error"]
