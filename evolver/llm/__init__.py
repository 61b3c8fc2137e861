"""Generative model gateway."""

from .gateway import ModelGateway, ModelRequest

__all__ = ["ModelGateway", "ModelRequest"]
