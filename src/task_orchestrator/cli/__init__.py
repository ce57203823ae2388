"""Command-line inspection of orchestrator snapshots."""
