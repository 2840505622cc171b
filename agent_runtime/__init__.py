"""
Agent Runtime

Orchestration and streaming execution engine for agent runs.

Components:
- controller: Manager/sub-agent delegation loop
- executor: One non-interactive sub-agent turn
- gateway: Interactive run streaming with tool approval and resume
- correlator: Task run to run matching and checkpoint analytics
- run_client: Agent Run Service client
- api: HTTP endpoints (NDJSON and SSE transports)
"""

from .main import app

__version__ = "0.1.0"
