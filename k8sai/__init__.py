"""A Kubernetes controller that works on plain-English Task resources with a chat model."""

__version__ = "0.0.5"