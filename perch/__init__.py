"""perch: a terminal dashboard for watching and steering a Gas Town fleet."""

__version__ = "0.1.0"
