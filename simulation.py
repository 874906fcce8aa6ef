"""Bucle de simulación de producción y consumo.

Cada tick perturba la producción de cada proveedor activo, recalcula su energía
disponible dentro de [0, max_capacity], recompone desde cero las estadísticas de
la comunidad y emite energy_data_update. Un fallo en un proveedor no aborta el
resto del tick y un tick fallido no detiene el bucle.
"""

import asyncio
import logging
import random
import threading
from typing import Callable, Optional
from starlette.concurrency import run_in_threadpool
from config import get_settings
from matching import MatchingEngine, ProviderLocks
from storage import Storage

logger = logging.getLogger(__name__)


# next_energy_figures: Nueva producción y energía disponible de un proveedor.
def next_energy_figures(current_production: float, max_capacity: float, rng: random.Random,
                        jitter: float = 1.0, max_consumption_fraction: float = 0.3):
    production = max(0.0, (current_production or 0.0) + rng.uniform(-jitter, jitter))
    consumption = rng.uniform(0.0, max_consumption_fraction) * production
    available = min(max_capacity or 0.0, max(0.0, production - consumption))
    return production, available


class SimulationLoop:
    """Tarea recurrente que simula los datos en vivo de los proveedores."""

    def __init__(self, storage: Storage, locks: ProviderLocks, notifier=None,
                 matching: Optional[MatchingEngine] = None, rng: Optional[random.Random] = None,
                 active_consumers: Optional[Callable[[], int]] = None, settings=None):
        self.storage = storage
        self.locks = locks
        self.notifier = notifier
        self.matching = matching
        self.rng = rng or random.Random()
        self.settings = settings or get_settings()
        if active_consumers is None:
            if self.settings.active_consumers is not None:
                fixed = self.settings.active_consumers
                active_consumers = lambda: fixed  # noqa: E731
            else:
                active_consumers = storage.count_active_consumers
        self.active_consumers = active_consumers
        self.last_summary = {'totalProduction': 0.0, 'totalAvailable': 0.0, 'activeProviders': 0}
        self._tick_lock = threading.Lock()

    def _update_provider(self, provider_id: int):
        with self.locks.hold(provider_id):
            provider = self.storage.get_provider(provider_id)
            if provider is None or not provider.is_active:
                return None
            production, available = next_energy_figures(
                provider.current_production,
                provider.max_capacity,
                self.rng,
                jitter=self.settings.production_jitter,
                max_consumption_fraction=self.settings.max_consumption_fraction,
            )
            return self.storage.update_provider_energy(provider_id, production, available)

    def tick(self):
        """Un paso de simulación; devuelve la fila de estadísticas actualizada."""
        providers = self.storage.list_active_providers(with_available_energy=False)
        for provider in providers:
            try:
                self._update_provider(provider.id)
            except Exception:
                logger.exception("Simulation update failed for provider=%s", provider.id)

        # Recalcular desde cero con los valores escritos en este tick.
        active = self.storage.list_active_providers(with_available_energy=False)
        total_production = sum(p.current_production or 0.0 for p in active)
        total_available = sum(p.available_energy or 0.0 for p in active)
        self.last_summary = {
            'totalProduction': total_production,
            'totalAvailable': total_available,
            'activeProviders': len(active),
        }
        return self.storage.upsert_community_stats(
            total_production=total_production,
            total_consumption=total_production - total_available,
            active_providers=len(active),
            active_consumers=self.active_consumers(),
            current_flow_rate=total_production * self.settings.flow_rate_factor,
        )

    def _locked_tick(self):
        # Un tick abandonado por timeout sigue en su hilo; no se solapa con el siguiente.
        if not self._tick_lock.acquire(blocking=False):
            return None
        try:
            return self.tick()
        finally:
            self._tick_lock.release()

    async def run_once(self):
        """Tick acotado en tiempo, difusión del resumen y reintento de pendientes si está activado.

        Si el tick anterior sigue en curso no se hace nada y devuelve None.
        """
        stats = await asyncio.wait_for(run_in_threadpool(self._locked_tick), timeout=self.settings.simulation_timeout)
        if stats is None:
            logger.warning("Previous simulation tick still running; skipping this one")
            return None
        if self.notifier is not None:
            await self.notifier.broadcast('energy_data_update', dict(self.last_summary))
        if self.settings.rematch_pending_on_tick and self.matching is not None:
            # Las más antiguas primero.
            pending = await run_in_threadpool(self.storage.list_pending_requests)
            for request in reversed(pending):
                await self.matching.match_and_notify(request.id)
        return stats

    async def run(self):
        """Bucle infinito; los fallos de un tick se registran y el bucle continúa."""
        while True:
            await asyncio.sleep(self.settings.simulation_interval)
            try:
                await self.run_once()
            except asyncio.TimeoutError:
                logger.warning("Simulation tick exceeded %ss", self.settings.simulation_timeout)
            except Exception:
                logger.exception("Simulation tick failed; will retry")
