"""
Background Job Dispatch

A small façade for submitting named units of work to a Postgres-backed
queue and executing them in a separate worker process pool, decoupled from
the web request/response cycle.
"""

__version__ = "1.0.0"
