import asyncio
import json
import logging

import jwt
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from neowatch.auth import get_current_user, require_admin, user_id_from_token
from neowatch.config import CORS_ORIGINS, LOG_FILE, LOG_LEVEL, RUN_FETCH_ON_STARTUP, SCHEDULER_ENABLED
from neowatch.db import get_active_db_url, get_db, init_db
from neowatch.logging_setup import setup_logging
from neowatch.models import User, utc_now
from neowatch.schemas import AlertOut, FetchTrigger
from neowatch.services.alert_dispatcher import list_alerts, mark_alert_read, mark_all_alerts_read
from neowatch.services.asteroid_store import snapshot_counts
from neowatch.services.nasa_client import fetch_neo_lookup
from neowatch.services.neo_processing import normalize_feed_record, to_risk_input
from neowatch.services.notifications import ConnectionManager, asteroid_channel
from neowatch.services.pipeline import PIPELINE_DAILY, PipelineOrchestrator
from neowatch.services.risk_engine import calculate_risk
from neowatch.services.scheduler import PipelineScheduler

logger = logging.getLogger(__name__)

app = FastAPI(title='NEO Watch API')
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

notification_manager = ConnectionManager()


def _db_unavailable() -> HTTPException:
    return HTTPException(status_code=503, detail={'error': 'DB_ERROR', 'message': 'Database unavailable'})


def _alert_out(alert) -> dict:
    return AlertOut.model_validate(alert).model_dump(mode='json')


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    orchestrator = getattr(request.app.state, 'orchestrator', None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail={'error': 'PIPELINE_UNAVAILABLE', 'message': 'Pipeline is not running'})
    return orchestrator


@app.on_event('startup')
async def startup() -> None:
    setup_logging(LOG_LEVEL, LOG_FILE)
    db_url = init_db()
    logger.info('Database ready: %s', db_url)

    notification_manager.bind_loop(asyncio.get_running_loop())
    orchestrator = PipelineOrchestrator(gateway=notification_manager)
    scheduler = PipelineScheduler(orchestrator)
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler

    if SCHEDULER_ENABLED:
        scheduler.start()
    if RUN_FETCH_ON_STARTUP:
        logger.info('Running initial NEO fetch in background')
        orchestrator.submit(PIPELINE_DAILY, trigger='startup')


@app.on_event('shutdown')
async def shutdown() -> None:
    scheduler = getattr(app.state, 'scheduler', None)
    if scheduler is not None:
        await scheduler.stop()
    orchestrator = getattr(app.state, 'orchestrator', None)
    if orchestrator is not None:
        orchestrator.shutdown(wait=False)


@app.get('/')
def root() -> dict:
    return {'message': 'NEO Watch API is running', 'db': get_active_db_url()}


@app.get('/favicon.ico', include_in_schema=False)
def favicon() -> Response:
    return Response(status_code=204)


@app.get('/health')
def health(request: Request) -> dict:
    scheduler = getattr(request.app.state, 'scheduler', None)
    return {
        'status': 'ok',
        'db': get_active_db_url(),
        'scheduler': bool(scheduler and scheduler.is_running),
        'subscribers': notification_manager.active_count,
    }


@app.post('/api/admin/fetch', status_code=status.HTTP_202_ACCEPTED)
def trigger_fetch(
    payload: FetchTrigger,
    admin: dict = Depends(require_admin),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> dict:
    logger.info('Manual fetch requested by %s (mode: %s)', admin.get('sub'), payload.mode)
    run = orchestrator.trigger_manual(payload.mode)
    label = 'Weekly' if payload.mode == 'week' else 'Daily'
    return {'message': f'{label} fetch initiated. Poll the run for progress.', 'run': run.to_dict()}


@app.get('/api/admin/runs/{run_id}')
def get_run(
    run_id: str,
    _: dict = Depends(require_admin),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> dict:
    run = orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail={'error': 'RUN_NOT_FOUND', 'message': 'No such pipeline run'})
    return {'run': run.to_dict()}


@app.get('/api/admin/stats')
def admin_stats(_: dict = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    try:
        counts = snapshot_counts(db)
    except SQLAlchemyError:
        raise _db_unavailable()
    return {**counts, 'generated_at': utc_now().isoformat()}


@app.get('/api/admin/lookup/{neo_id}')
def admin_lookup(neo_id: str, _: dict = Depends(require_admin)) -> dict:
    raw = fetch_neo_lookup(neo_id)
    if raw is None:
        raise HTTPException(
            status_code=502,
            detail={'error': 'NASA_UPSTREAM_ERROR', 'message': 'Unable to fetch data from NASA NeoWs.'},
        )
    try:
        record = normalize_feed_record(raw)
    except (ValueError, TypeError):
        raise HTTPException(status_code=502, detail={'error': 'NASA_BAD_PAYLOAD', 'message': 'NASA returned an unusable record.'})
    risk = calculate_risk(to_risk_input(record))
    return {'item': record.model_dump(mode='json', exclude={'raw_data'}), 'risk': risk.model_dump()}


@app.get('/api/alerts')
def get_alerts(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    unread_only: bool = Query(default=False),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    items, total = list_alerts(db, user.id, page=page, limit=limit, unread_only=unread_only)
    unread_total = total if unread_only else list_alerts(db, user.id, limit=1, unread_only=True)[1]
    return {
        'items': [_alert_out(alert) for alert in items],
        'unread_count': unread_total,
        'pagination': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)},
    }


@app.get('/api/alerts/unread')
def get_unread(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    items, _ = list_alerts(db, user.id, limit=20, unread_only=True)
    return {'count': len(items), 'items': [_alert_out(alert) for alert in items]}


@app.put('/api/alerts/read-all')
def read_all_alerts(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    try:
        updated = mark_all_alerts_read(db, user.id)
    except SQLAlchemyError:
        db.rollback()
        raise _db_unavailable()
    return {'message': f'Marked {updated} alerts as read', 'updated': updated}


@app.put('/api/alerts/{alert_id}/read')
def read_alert(alert_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    try:
        alert = mark_alert_read(db, alert_id, user.id)
    except SQLAlchemyError:
        db.rollback()
        raise _db_unavailable()
    if alert is None:
        raise HTTPException(status_code=404, detail={'error': 'ALERT_NOT_FOUND', 'message': 'Alert not found'})
    return {'item': _alert_out(alert)}


@app.websocket('/ws/notifications')
async def notifications_socket(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    user_id = None
    if token:
        try:
            user_id = user_id_from_token(token)
        except (jwt.InvalidTokenError, ValueError, TypeError):
            await websocket.close(code=4401)
            return

    await notification_manager.connect(websocket, user_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await notification_manager.send_personal(websocket, {'type': 'error', 'message': 'Invalid JSON payload.'})
                continue

            action = payload.get('type') if isinstance(payload, dict) else None
            asteroid_id = str(payload.get('asteroid_id', '')).strip() if isinstance(payload, dict) else ''
            if action in ('watch_asteroid', 'unwatch_asteroid') and not asteroid_id:
                await notification_manager.send_personal(websocket, {'type': 'error', 'message': 'asteroid_id is required.'})
            elif action == 'watch_asteroid':
                notification_manager.subscribe(websocket, asteroid_channel(asteroid_id))
                await notification_manager.send_personal(websocket, {'type': 'subscribed', 'channel': asteroid_channel(asteroid_id)})
            elif action == 'unwatch_asteroid':
                notification_manager.unsubscribe(websocket, asteroid_channel(asteroid_id))
                await notification_manager.send_personal(websocket, {'type': 'unsubscribed', 'channel': asteroid_channel(asteroid_id)})
            else:
                await notification_manager.send_personal(websocket, {'type': 'error', 'message': 'Unknown action.'})
    except WebSocketDisconnect:
        notification_manager.disconnect(websocket)
