from .frames import frames_router

__all__ = ["frames_router"]
