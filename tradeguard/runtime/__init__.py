"""
Runtime wiring: builds the engine from configuration and runs its loops.
"""
from tradeguard.runtime.engine import TradingEngine, build_broker

__all__ = [
    "TradingEngine",
    "build_broker",
]
