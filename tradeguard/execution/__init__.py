"""
Execution module.

Contains idempotent order submission, rejection recovery and the position
risk state machine.

ARCHITECTURE:
    PositionManager (exit rules, open/close/partial close)
        │
        ├── OrderSubmissionCoordinator (idempotent submit/cancel)
        │       │
        │       └── SqlWorkQueue ──► WorkQueueWorker ──► broker
        │
        ├── OrderMonitor (fill waiting, stale order cleanup)
        │
        └── TradeRecorder (one row per fill)

    OrderRetryEngine (rejected/canceled orders, direct resubmission)
        │
        ├── rejection_handlers (ordered pattern → fix registry)
        └── RetryCircuitBreaker (process-wide)
"""
