import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from order_board.config import settings
from order_board.db import SessionLocal
from order_board.routers import cards, events, webhooks
from order_board.security.sessions import install_auth_session_middleware

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title='Order Board')
app.state.session_factory = SessionLocal

install_auth_session_middleware(app)

app.include_router(cards.router)
app.include_router(events.router)
app.include_router(webhooks.router)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error('Database error on %s %s: %s', request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={'detail': 'Database error'})


@app.get('/api/health')
def health() -> dict:
    return {'status': 'healthy'}
