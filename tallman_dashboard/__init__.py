"""Tallman metrics dashboard: query orchestration behind the BI charts."""
