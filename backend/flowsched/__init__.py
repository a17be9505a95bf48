"""flowsched - admission-controlled asynchronous workflow execution scheduler."""

__version__ = "0.1.0"
