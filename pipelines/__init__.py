"""
Data pipelines for the route scoring engine

This directory contains batch jobs that run on schedules:
- refresh_traffic.py: Recompute the per-route traffic cache (every few minutes)
- recalculate_scores.py: Rebuild route scores from moderated reports (admin, on demand)
"""
