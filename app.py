"""Aplicación FastAPI principal del intercambio de energía entre vecinos.

Expone registro/login, CRUD de proveedores y solicitudes, consultas de
transacciones y estadísticas, y el canal /ws por el que se difunden los eventos.
El motor de emparejamiento corre de forma síncrona al crear cada solicitud; la
simulación y el heartbeat son tareas de fondo ligadas al ciclo de vida de la app.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Literal
from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from models import User
from database import init_db, engine
from security import hash_password, verify_password, create_token, decode_token
from config import get_settings
from storage import Storage, RecordNotFound, InvalidTransition
from matching import MatchingEngine, ProviderLocks
from simulation import SimulationLoop
from notifications import NotificationHub

settings = get_settings()
logger = logging.getLogger(__name__)
security = HTTPBearer()

# ---------------------------- Schemas ----------------------------
class RegisterPayload(BaseModel):
    """Payload para registro de usuarios nuevos."""
    username: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    user_type: Literal['provider', 'consumer', 'both'] = 'consumer'
    location: Optional[str] = None
    profile_image: Optional[str] = None

class LoginPayload(BaseModel):
    """Payload para inicio de sesión y obtención de JWT."""
    username: str
    password: str

class ProviderPayload(BaseModel):
    """Alta de un dispositivo productor."""
    user_id: int
    provider_name: str = Field(min_length=1)
    energy_type: Literal['solar', 'wind', 'battery']
    max_capacity: float = Field(gt=0)
    current_production: float = Field(default=0.0, ge=0)
    available_energy: float = Field(default=0.0, ge=0)
    price_per_kwh: Optional[float] = Field(default=None, ge=0)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_active: bool = True

class ProviderUpdatePayload(BaseModel):
    """Cambios editables por el dueño del proveedor."""
    provider_name: Optional[str] = Field(default=None, min_length=1)
    price_per_kwh: Optional[float] = Field(default=None, ge=0)
    is_active: Optional[bool] = None

class EnergyDataPayload(BaseModel):
    """Actualización manual de producción y energía disponible."""
    current_production: float = Field(ge=0)
    available_energy: float = Field(ge=0)

class RequestPayload(BaseModel):
    """Solicitud de energía de un consumidor."""
    user_id: int
    energy_amount: float = Field(gt=0)
    urgency_level: Literal['immediate', 'urgent', 'normal', 'scheduled'] = 'normal'
    preferred_time_slot: Optional[str] = None
    max_price: Optional[float] = Field(default=None, ge=0)
    requested_for: Optional[datetime] = None

# ----------------------- Lifecycle & Dependencies -----------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Crea tablas, registro de conexiones y tareas de fondo; las detiene al salir."""
    logging.basicConfig(level=settings.log_level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    init_db()
    storage = Storage(engine)
    locks = ProviderLocks()
    hub = NotificationHub()
    matching = MatchingEngine(storage, locks, notifier=hub, default_price=settings.default_price_per_kwh)
    simulation = SimulationLoop(storage, locks, notifier=hub, matching=matching, settings=settings)
    app.state.storage = storage
    app.state.locks = locks
    app.state.hub = hub
    app.state.matching = matching
    app.state.simulation = simulation

    tasks = [asyncio.create_task(hub.run_heartbeat(settings.heartbeat_interval))]
    if settings.simulation_enabled:
        tasks.append(asyncio.create_task(simulation.run()))
    logger.info("Started with simulation_enabled=%s", settings.simulation_enabled)
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await hub.close_all()

app = FastAPI(title="P2P Energy Sharing API", version="0.1.0", lifespan=lifespan)

def get_storage(request: Request) -> Storage:
    return request.app.state.storage

def get_hub(request: Request) -> NotificationHub:
    return request.app.state.hub

def get_matching(request: Request) -> MatchingEngine:
    return request.app.state.matching

def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                     storage: Storage = Depends(get_storage)):
    """Obtiene el usuario autenticado a partir del token JWT o lanza 401."""
    data = decode_token(credentials.credentials)
    if not data:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = storage.get_user_by_username(data.get('sub'))
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user

# user_out: Representación pública del usuario (sin hash de contraseña).
def user_out(user: User):
    return user.model_dump(exclude={'password_hash'})

def require_user(storage: Storage, user_id: int):
    if not storage.get_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")

# --------------------------- Auth Routes -------------------------
@app.post('/auth/register')
def register(payload: RegisterPayload, storage: Storage = Depends(get_storage)):
    """Registra un usuario con username y email únicos."""
    if storage.get_user_by_username(payload.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    if storage.get_user_by_email(payload.email):
        raise HTTPException(status_code=400, detail="Email already exists")
    fields = payload.model_dump(exclude={'password'})
    user = storage.create_user(password_hash=hash_password(payload.password), **fields)
    return user_out(user)

@app.post('/auth/login')
def login(payload: LoginPayload, storage: Storage = Depends(get_storage)):
    """Autentica usuario y devuelve token JWT junto con sus datos."""
    user = storage.get_user_by_username(payload.username)
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_token(user.username, user.user_type)
    return {"access_token": token, "token_type": "bearer", "user": user_out(user)}

@app.get('/auth/me')
def me(user: User = Depends(get_current_user)):
    return user_out(user)

@app.get('/users/{user_id}')
def get_user(user_id: int, storage: Storage = Depends(get_storage)):
    user = storage.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user_out(user)

# ------------------------- Provider Routes -----------------------
@app.get('/providers')
def list_providers(storage: Storage = Depends(get_storage)):
    """Proveedores activos con energía disponible, de mayor a menor."""
    return storage.list_active_providers()

@app.post('/providers')
async def create_provider(payload: ProviderPayload, storage: Storage = Depends(get_storage),
                          hub: NotificationHub = Depends(get_hub)):
    """Registra un proveedor y emite provider_added."""
    fields = payload.model_dump()
    fields['available_energy'] = min(fields['available_energy'], fields['max_capacity'])

    def persist():
        require_user(storage, payload.user_id)
        return storage.create_provider(**fields)

    provider = await run_in_threadpool(persist)
    await hub.broadcast('provider_added', provider)
    return provider

@app.get('/providers/user/{user_id}')
def list_user_providers(user_id: int, storage: Storage = Depends(get_storage)):
    return storage.list_providers_by_user(user_id)

@app.patch('/providers/{provider_id}')
def update_provider(provider_id: int, payload: ProviderUpdatePayload, storage: Storage = Depends(get_storage)):
    provider = storage.update_provider(provider_id, **payload.model_dump(exclude_unset=True))
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    return provider

@app.put('/providers/{provider_id}/energy')
async def update_provider_energy(provider_id: int, payload: EnergyDataPayload, request: Request,
                                 storage: Storage = Depends(get_storage), hub: NotificationHub = Depends(get_hub)):
    """Actualización manual; la energía disponible se limita a [0, max_capacity]."""
    locks: ProviderLocks = request.app.state.locks

    def apply():
        with locks.hold(provider_id):
            current = storage.get_provider(provider_id)
            if not current:
                return None
            available = min(current.max_capacity, max(0.0, payload.available_energy))
            return storage.update_provider_energy(provider_id, payload.current_production, available)

    provider = await run_in_threadpool(apply)
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    await hub.broadcast('energy_update', {
        'providerId': provider.id,
        'currentProduction': provider.current_production,
        'availableEnergy': provider.available_energy,
    })
    return provider

# -------------------------- Request Routes -----------------------
@app.get('/requests')
def list_requests(storage: Storage = Depends(get_storage)):
    """Solicitudes pendientes, de la más reciente a la más antigua."""
    return storage.list_pending_requests()

@app.post('/requests')
async def create_request(payload: RequestPayload, storage: Storage = Depends(get_storage),
                         hub: NotificationHub = Depends(get_hub), matching: MatchingEngine = Depends(get_matching)):
    """Guarda la solicitud, emite new_request y ejecuta el emparejamiento antes de responder."""
    def persist():
        require_user(storage, payload.user_id)
        return storage.create_request(**payload.model_dump())

    energy_request = await run_in_threadpool(persist)
    await hub.broadcast('new_request', energy_request)
    outcome = await matching.match_and_notify(energy_request.id)
    if outcome.request is not None:
        return outcome.request
    return await run_in_threadpool(storage.get_request, energy_request.id)

@app.get('/requests/user/{user_id}')
def list_user_requests(user_id: int, storage: Storage = Depends(get_storage)):
    return storage.list_requests_by_user(user_id)

@app.post('/requests/{request_id}/fulfill')
def fulfill_request(request_id: int, storage: Storage = Depends(get_storage)):
    """Marca como fulfilled una solicitud matched y completa su transacción."""
    try:
        return storage.fulfill_request(request_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Request not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.post('/requests/{request_id}/cancel')
def cancel_request(request_id: int, storage: Storage = Depends(get_storage)):
    """Cancela una solicitud pending o matched."""
    try:
        return storage.cancel_request(request_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Request not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=400, detail=str(e))

# ----------------------- Transaction Endpoints -------------------
@app.get('/transactions/user/{user_id}')
def list_user_transactions(user_id: int, storage: Storage = Depends(get_storage)):
    return storage.list_transactions_by_user(user_id)

@app.get('/transactions/recent')
def list_recent_transactions(limit: Optional[int] = None, storage: Storage = Depends(get_storage)):
    """Transacciones más recientes (por defecto RECENT_TRANSACTIONS_LIMIT)."""
    return storage.list_recent_transactions(limit or settings.recent_transactions_limit)

# -------------------------- Community ----------------------------
@app.get('/community/stats')
def community_stats(storage: Storage = Depends(get_storage)):
    """Estadísticas de la comunidad; se inicializan en cero si aún no existen."""
    stats = storage.get_community_stats()
    if not stats:
        stats = storage.upsert_community_stats(
            total_production=0.0,
            total_consumption=0.0,
            active_providers=0,
            active_consumers=0,
            current_flow_rate=0.0,
        )
    return stats

# -------------------------- Utility ------------------------------
@app.get('/health')
def health(hub: NotificationHub = Depends(get_hub)):
    """Verificación básica de salud, conexiones vivas y estado de la simulación."""
    return {
        "status": "ok",
        "connections": len(hub),
        "simulation_enabled": settings.simulation_enabled,
    }

# -------------------------- WebSocket ----------------------------
@app.websocket('/ws')
async def websocket_endpoint(websocket: WebSocket):
    """Canal de eventos; acepta {"type": "auth", "userId": n} y {"type": "pong"}.

    Los frames binarios se ignoran sin cerrar la conexión.
    """
    hub: NotificationHub = websocket.app.state.hub
    await websocket.accept()
    connection = hub.register(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                break
            raw = message.get('text')
            if raw is None:
                logger.warning("Ignoring non-text socket frame from user=%s", connection.user_id)
                continue
            hub.handle_message(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(connection)


if __name__ == "__main__":
    import uvicorn

    # Los ping frames de transporte detectan sockets medio abiertos en cualquier cliente.
    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        ws_ping_interval=settings.heartbeat_interval,
        ws_ping_timeout=settings.heartbeat_interval,
    )
