"""buildsentinel: turn pull request activity into CI override branches."""

__version__ = "0.1.0"
