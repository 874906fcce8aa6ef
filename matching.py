"""Motor de emparejamiento entre solicitudes de energía y proveedores.

Algoritmo: entre los proveedores activos con energía disponible suficiente se
elige el de mayor energía disponible; los empates se resuelven por el id más bajo.
Un emparejamiento fallido no es un error: la solicitud queda pending.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Optional
from starlette.concurrency import run_in_threadpool
from config import get_settings
from storage import Storage, InsufficientEnergy, InvalidTransition, RecordNotFound

logger = logging.getLogger(__name__)


class ProviderLocks:
    """Un lock por proveedor para serializar las escrituras de available_energy.

    Lo comparten el motor de emparejamiento y la simulación.
    """
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def get(self, provider_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(provider_id)
            if lock is None:
                lock = self._locks[provider_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, provider_id: int):
        lock = self.get(provider_id)
        with lock:
            yield


class MatchOutcome:
    """Resultado de un intento de emparejamiento.

    reason: matched | no_provider | not_found | not_pending
    """
    def __init__(self, request_id: int, reason: str, request=None, provider=None, transaction=None):
        self.request_id = request_id
        self.reason = reason
        self.request = request
        self.provider = provider
        self.transaction = transaction

    @property
    def matched(self) -> bool:
        return self.reason == 'matched'

    @property
    def provider_id(self) -> Optional[int]:
        return self.provider.id if self.provider is not None else None

    # to_event: Payload del evento match_found.
    def to_event(self):
        return {
            'requestId': self.request_id,
            'providerId': self.provider_id,
            'transaction': self.transaction,
        }


def select_provider(providers: Iterable, energy_amount: float):
    """Devuelve el proveedor elegido o None.

    Filtra los que tienen available_energy >= energy_amount y toma el máximo;
    a igual energía gana el id más bajo.
    """
    candidates = [p for p in providers if (p.available_energy or 0.0) >= energy_amount]
    if not candidates:
        return None
    return max(candidates, key=lambda p: (p.available_energy or 0.0, -p.id))


class MatchingEngine:
    """Empareja una solicitud pendiente y notifica el resultado."""

    def __init__(self, storage: Storage, locks: ProviderLocks, notifier=None, default_price: Optional[float] = None):
        self.storage = storage
        self.locks = locks
        self.notifier = notifier
        self.default_price = default_price if default_price is not None else get_settings().default_price_per_kwh

    def match_request(self, request_id: int) -> MatchOutcome:
        """Intenta emparejar la solicitud de forma síncrona (sin notificar).

        La elección se hace sobre una lectura sin lock; con el lock del proveedor
        tomado, apply_match vuelve a validar la energía. Si ya no alcanza, ese
        proveedor se descarta y se elige de nuevo con datos frescos.
        """
        request = self.storage.get_request(request_id)
        if request is None:
            return MatchOutcome(request_id, 'not_found')
        if request.status != 'pending':
            return MatchOutcome(request_id, 'not_pending', request=request)

        rejected = set()
        while True:
            providers = [p for p in self.storage.list_active_providers() if p.id not in rejected]
            provider = select_provider(providers, request.energy_amount)
            if provider is None:
                logger.info("No provider for request=%s amount=%s; left pending", request_id, request.energy_amount)
                return MatchOutcome(request_id, 'no_provider', request=self.storage.get_request(request_id))

            price = provider.price_per_kwh if provider.price_per_kwh is not None else self.default_price
            with self.locks.hold(provider.id):
                try:
                    request, tx, provider = self.storage.apply_match(request_id, provider.id, price)
                except InsufficientEnergy as e:
                    logger.info(
                        "Provider %s dropped to %s before matching request=%s; reselecting",
                        e.provider_id, e.available, request_id,
                    )
                    rejected.add(e.provider_id)
                    continue
                except InvalidTransition:
                    # Otro intento ya emparejó o canceló la solicitud.
                    return MatchOutcome(request_id, 'not_pending', request=self.storage.get_request(request_id))
                except RecordNotFound:
                    return MatchOutcome(request_id, 'not_found')

            logger.info(
                "Matched request=%s provider=%s amount=%s total=%s",
                request_id, provider.id, tx.energy_amount, tx.total_price,
            )
            return MatchOutcome(request_id, 'matched', request=request, provider=provider, transaction=tx)

    async def match_and_notify(self, request_id: int) -> MatchOutcome:
        """Ejecuta match_request fuera del event loop y emite match_found si hubo éxito."""
        outcome = await run_in_threadpool(self.match_request, request_id)
        if outcome.matched and self.notifier is not None:
            await self.notifier.broadcast('match_found', outcome.to_event())
        return outcome
