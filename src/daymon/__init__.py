"""daymon: scheduled automation tasks run by a supervised background worker."""

__version__ = "0.3.0"
