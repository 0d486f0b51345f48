from .discrepancy_api import router as discrepancy_router

__all__ = ['discrepancy_router']
