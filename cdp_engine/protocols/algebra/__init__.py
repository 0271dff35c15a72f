from .adapter import AlgebraAdapter

__all__ = ["AlgebraAdapter"]
