"""perfgate package initialization.

Exports for testing and module access.
"""

from perfgate import lib, models

__version__ = '0.1.0'

__all__ = ['lib', 'models', '__version__']
