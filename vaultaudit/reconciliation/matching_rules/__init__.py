# Set comparison rules for reconciliation
from .set_comparator import ComparisonResult, compare

__all__ = ['ComparisonResult', 'compare']
