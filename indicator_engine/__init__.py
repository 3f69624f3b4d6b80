"""
Pulso Indicator Engine
───────────────────────
Cache, data model and aggregation for Argentine market indicators.

    from indicator_engine.orchestrator.aggregator import IndicatorAggregator
    overview = await IndicatorAggregator().get_overview()
"""
