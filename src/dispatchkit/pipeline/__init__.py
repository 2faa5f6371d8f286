"""Run orchestration: logging setup, reporting, worker loop and runner."""
