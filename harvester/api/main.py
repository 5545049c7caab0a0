"""
Event Harvester API - Health and Metrics Endpoints
Serves orchestrator state, plus stored events when a SQLite store is given.
"""

import json
from typing import List, Optional, Dict, Any
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..scraper.core.orchestrator import ScraperOrchestrator
from ..database import SQLiteRecordStore


class HealthResponse(BaseModel):
    healthy: bool
    issues: List[str]


class ActionResponse(BaseModel):
    id: str
    ok: bool


def create_app(orchestrator: ScraperOrchestrator, store: Optional[SQLiteRecordStore] = None) -> FastAPI:
    """FastAPI app bound to one orchestrator"""
    app = FastAPI(title="Event Harvester API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def get_health():
        return orchestrator.get_health_status()

    @app.get("/health/report")
    async def get_health_report():
        """Per-target health, rate limiters, circuits and live scrapers."""
        return orchestrator.get_health_report()

    @app.get("/metrics")
    async def get_metrics():
        return {
            'aggregate': orchestrator.get_aggregated_metrics(),
            'sessions': [m.to_dict() for m in orchestrator.get_metrics()],
        }

    @app.get("/statistics")
    async def get_statistics():
        return orchestrator.get_statistics()

    @app.get("/sessions")
    async def list_sessions(active: bool = False):
        sessions = orchestrator.get_active_sessions() if active else list(orchestrator.sessions.values())
        return [s.to_dict() for s in sessions]

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        session = orchestrator.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return session.to_dict()

    @app.post("/sessions/{session_id}/cancel", response_model=ActionResponse)
    async def cancel_session(session_id: str):
        if orchestrator.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return {'id': session_id, 'ok': orchestrator.cancel_session(session_id)}

    @app.get("/circuits")
    async def get_circuits():
        return orchestrator.circuit_breakers.get_all_stats()

    @app.post("/circuits/{target_id}/reset", response_model=ActionResponse)
    async def reset_circuit(target_id: str):
        if not orchestrator.reset_circuit(target_id):
            raise HTTPException(status_code=404, detail=f"No circuit for target: {target_id}")
        return {'id': target_id, 'ok': True}

    @app.get("/events")
    async def get_events(
        source: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = Query(default=100, le=500),
    ) -> Dict[str, Any]:
        """Stored events, soonest first."""
        if store is None:
            raise HTTPException(status_code=404, detail="No record store configured")

        query = "SELECT payload FROM events WHERE 1=1"
        params: list = []
        if source:
            query += " AND source = ?"
            params.append(source)
        if category:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY start_time LIMIT ?"
        params.append(limit)

        events = [json.loads(row['payload']) for row in store.fetchall(query, tuple(params))]
        return {'count': len(events), 'events': events}

    return app


def serve(orchestrator: ScraperOrchestrator, host: str = "0.0.0.0", port: int = 8000,
          store: Optional[SQLiteRecordStore] = None):
    import uvicorn
    uvicorn.run(create_app(orchestrator, store), host=host, port=port)
