"""Control the Apache server of a XAMPP installation from the command line."""

__version__ = "0.1.0"