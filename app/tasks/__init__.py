from app.tasks.expiry_sweeper import run_expiry_sweeper, sweep_once

__all__ = [
    "run_expiry_sweeper",
    "sweep_once",
]
