"""Checks that run a built network end to end: comparison against
per-layer reference outputs of an imported model, and numeric gradient
checks."""
from .gradient import GradientCheck, check_gradients
from .model_import import Mismatch, verify_import, verify_model

__all__ = ['GradientCheck', 'check_gradients', 'Mismatch', 'verify_import', 'verify_model']
