from .attempts import first_success

__all__ = ["first_success"]
