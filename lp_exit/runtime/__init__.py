from .logging import setup_logger
from .runner import (
    ExitServices,
    build_orchestrator,
    build_services,
    close_services,
    connect_services,
    resolve_owner,
    run_dry_plan,
    run_health,
    simulate_plan,
)
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "ExitServices",
    "build_orchestrator",
    "build_services",
    "close_services",
    "connect_services",
    "resolve_owner",
    "run_dry_plan",
    "run_health",
    "setup_logger",
    "simulate_plan",
]
