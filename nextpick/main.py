import base64
import logging
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates

from . import config
from .picqer import PicqerGateway
from .poller import PickPoller

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO), format='%(asctime)s %(levelname)s %(name)s %(message)s')
logger = logging.getLogger('nextpick')

POLICY = config.Policy.from_env()

app = FastAPI()

BASE_DIR = Path(__file__).resolve().parent.parent
TEMPLATES = Jinja2Templates(directory=str(BASE_DIR / 'templates'))

NO_STORE = {'Cache-Control': 'no-store, no-cache, must-revalidate, proxy-revalidate'}


class ConnectionManager:
    def __init__(self):
        self._connections = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self._connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self._connections.discard(websocket)

    async def broadcast(self, payload: dict):
        for ws in list(self._connections):
            try:
                await ws.send_json(payload)
            except Exception:
                self.disconnect(ws)


manager = ConnectionManager()
gateway = PicqerGateway(timeout_ms=POLICY.fetch_timeout_ms)
poller = PickPoller(gateway, POLICY)
poller.add_listener(manager.broadcast)


def _basic_auth(request: Request):
    if not config.BASIC_AUTH_USER or not config.BASIC_AUTH_PASS:
        return True
    auth = request.headers.get('Authorization')
    if not auth or not auth.lower().startswith('basic '):
        return False
    try:
        userpass = base64.b64decode(auth.split(' ', 1)[1]).decode('utf-8')
        user, pwd = userpass.split(':', 1)
    except (ValueError, UnicodeDecodeError):
        return False
    return user == config.BASIC_AUTH_USER and pwd == config.BASIC_AUTH_PASS


def require_auth(request: Request):
    if not _basic_auth(request):
        raise HTTPException(status_code=401, detail='Unauthorized', headers={'WWW-Authenticate': 'Basic'})
    return True


@app.on_event('startup')
async def on_startup():
    if not gateway.is_configured():
        logger.warning('PICQER_API_URL or PICQER_API_KEY missing, poll loop not started')
        return
    poller.start()


@app.on_event('shutdown')
async def on_shutdown():
    await poller.stop()


@app.websocket('/ws')
async def ws_display(websocket: WebSocket):
    await manager.connect(websocket)
    await websocket.send_json(poller.snapshot())
    try:
        while True:
            message = await websocket.receive_text()
            if message == 'focus':
                poller.poke()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


@app.get('/', response_class=HTMLResponse)
def display(request: Request, auth=Depends(require_auth)):
    state = poller.snapshot()
    resp = TEMPLATES.TemplateResponse(request, 'display.html', {'state': state})
    resp.headers.update(NO_STORE)
    return resp


@app.get('/api/state')
def api_state(auth=Depends(require_auth)):
    return JSONResponse(poller.snapshot(), headers=NO_STORE)


@app.post('/api/focus')
async def api_focus(auth=Depends(require_auth)):
    poller.poke()
    return {'ok': True, 'mode': poller.mode()}


@app.get('/api/env-check')
def env_check(auth=Depends(require_auth)):
    return {
        'PICQER_API_URL': gateway.base_url or None,
        'PICQER_API_KEY_set': bool(gateway.api_key),
        'note': 'PICQER_API_URL should look like https://<tenant>.picqer.com/api/v1',
    }


@app.get('/api/product-image/{code}')
async def product_image(code: str, auth=Depends(require_auth)):
    url = await gateway.product_image_url(code)
    return {'code': code, 'url': url}


@app.get('/health')
def health():
    return {
        'ok': True,
        'version': config.APP_VERSION,
        'configured': gateway.is_configured(),
        'phase': poller.phase.value,
        'ticks': poller.ticks,
    }


def run():
    import uvicorn

    uvicorn.run('nextpick.main:app', host=config.APP_HOST, port=config.APP_PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == '__main__':
    run()
