"""Utilidades compartidas por los tests: almacenamiento aislado y sockets falsos."""

from config import Settings
from database import make_engine, init_db
from storage import Storage


def make_storage():
    engine = make_engine('sqlite://')
    init_db(engine)
    return Storage(engine)


def make_settings(**overrides):
    settings = Settings()
    settings.__dict__.update(overrides)
    return settings


def add_user(storage, username='alice', user_type='consumer'):
    return storage.create_user(
        username=username,
        email=f'{username}@example.com',
        password_hash='x',
        display_name=username.title(),
        user_type=user_type,
    )


def add_provider(storage, user_id, available=10.0, price=0.20, max_capacity=20.0, production=None, **extra):
    return storage.create_provider(
        user_id=user_id,
        provider_name=extra.pop('provider_name', 'Roof panels'),
        energy_type=extra.pop('energy_type', 'solar'),
        max_capacity=max_capacity,
        current_production=available if production is None else production,
        available_energy=available,
        price_per_kwh=price,
        **extra
    )


class FakeSocket:
    """Sustituto de WebSocket que guarda lo enviado."""
    def __init__(self, fail=False):
        self.sent = []
        self.closed = False
        self.fail = fail

    async def send_text(self, message):
        if self.fail or self.closed:
            raise RuntimeError('socket closed')
        self.sent.append(message)

    async def close(self):
        self.closed = True


class RecordingNotifier:
    """Notificador que registra (tipo, payload) en lugar de difundir."""
    def __init__(self):
        self.events = []

    async def broadcast(self, event_type, payload):
        self.events.append((event_type, payload))
        return 1

    def types(self):
        return [event_type for event_type, _ in self.events]
