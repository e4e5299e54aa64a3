"""portwatch - watch development ports and resolve conflicts between the processes on them."""

__version__ = "0.3.0"
