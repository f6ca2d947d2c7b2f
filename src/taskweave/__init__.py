"""Persistent DAG execution engine for tool and inference sub-tasks."""

__version__ = "0.1.0"
