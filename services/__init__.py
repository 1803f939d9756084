"""Run services: orchestration, result collection, alerting and route monitoring."""

__all__ = [
    "AlertConsolidator",
    "PhaseOrchestrator",
    "ResultCollector",
    "RouteHealthAggregator",
]


def __getattr__(name: str):
    if name == "AlertConsolidator":
        from services.alert_consolidator import AlertConsolidator

        return AlertConsolidator
    if name == "PhaseOrchestrator":
        from services.orchestrator import PhaseOrchestrator

        return PhaseOrchestrator
    if name == "ResultCollector":
        from services.result_collector import ResultCollector

        return ResultCollector
    if name == "RouteHealthAggregator":
        from services.route_monitor import RouteHealthAggregator

        return RouteHealthAggregator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
