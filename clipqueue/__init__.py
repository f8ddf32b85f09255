"""clipqueue - plan-aware image-to-video job scheduler."""

__version__ = "1.0.0"
