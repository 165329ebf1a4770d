"""Task-graph execution engine.

Runs directed graphs of typed steps with success/failure branching,
bounded retries, per-step timeouts and live progress reporting.
"""

__version__ = "0.1.0"
