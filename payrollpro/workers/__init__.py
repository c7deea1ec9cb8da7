# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration
#   - tasks.py: knowledge-file ingestion (extract → chunk → embed → store)
#
# Workers are synchronous: they use the psycopg2 engine from
# payrollpro.db.engine.get_sync_session, never the async one.
# =============================================================================
