"""
Pulso News Ingestion
─────────────────────
RSS → editorial filters → AI classification → sqlite store,
with staleness-driven single-flight refresh.

    from news_ingestion.refresh import RefreshCoordinator
    await coordinator.trigger_background_refresh()
"""
