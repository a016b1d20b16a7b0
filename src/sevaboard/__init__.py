"""SevaBoard: live claim board for event item sign-ups."""

__version__ = "0.1.0"
