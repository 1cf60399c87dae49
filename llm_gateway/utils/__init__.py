from .deep_merge import deep_merge, merged

__all__ = ['deep_merge', 'merged']
