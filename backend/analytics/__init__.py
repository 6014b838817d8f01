"""
Analytics pipeline package.

Storage-agnostic core of the scheduled analytics jobs:
  - forecast   — daily 30-day metric projections
  - baseline   — trailing-window mean / standard deviation
  - detector   — Z-score anomaly detection and severity classification
  - batch      — per-tenant failure isolation for multi-tenant runs

Components receive repositories (``analytics.repositories``) and a logger
explicitly; the Celery tasks in ``workers`` wire them to SQLAlchemy sessions.
"""
