"""browsercron: scheduled natural-language browser automation."""

__version__ = "0.3.0"
