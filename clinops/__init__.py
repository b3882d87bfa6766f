"""Clinical operations job pipeline: note review and eligibility checks."""

__version__ = "0.1.0"
