from .base import AccountSource, StaticAccountSource
from .http_source import HttpAccountSource

__all__ = ['AccountSource', 'StaticAccountSource', 'HttpAccountSource']
