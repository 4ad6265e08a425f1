"""Sync loop for PunchSync.

Modules:
    orchestrator — Adaptive polling loop (fetch → transform → dispatch → schedule)
    interval     — Pure interval-adaptation policy
    cursor       — Monotonic sync watermark
    dedup        — Dispatch dedup cache (employee + timestamp + direction)
"""
