import asyncio
import random
import unittest

from matching import MatchingEngine, ProviderLocks
from simulation import SimulationLoop, next_energy_figures
from storage import Storage
from support import make_storage, make_settings, add_user, add_provider, RecordingNotifier


class TestNextEnergyFigures(unittest.TestCase):
    def test_figures_stay_in_bounds(self):
        rng = random.Random(7)
        production = 0.5
        for _ in range(500):
            production, available = next_energy_figures(production, 3.0, rng)
            self.assertGreaterEqual(production, 0.0)
            self.assertGreaterEqual(available, 0.0)
            self.assertLessEqual(available, 3.0)
            self.assertLessEqual(available, production)

    def test_perturbation_is_bounded(self):
        rng = random.Random(1)
        for _ in range(200):
            production, _ = next_energy_figures(10.0, 100.0, rng, jitter=1.0)
            self.assertLessEqual(abs(production - 10.0), 1.0)

    def test_consumption_fraction_bounds_available(self):
        rng = random.Random(3)
        for _ in range(200):
            production, available = next_energy_figures(10.0, 100.0, rng, max_consumption_fraction=0.3)
            self.assertGreaterEqual(available, production * 0.7 - 1e-9)


class FlakyStorage(Storage):
    """Falla al escribir la energía de un proveedor concreto."""
    def __init__(self, bind, failing_id):
        super().__init__(bind)
        self.failing_id = failing_id

    def update_provider_energy(self, provider_id, current_production, available_energy):
        if provider_id == self.failing_id:
            raise RuntimeError('disk full')
        return super().update_provider_energy(provider_id, current_production, available_energy)


class TestSimulationLoop(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.storage = make_storage()
        self.settings = make_settings(active_consumers=None, rematch_pending_on_tick=False,
                                      simulation_interval=0, simulation_timeout=5)
        self.notifier = RecordingNotifier()
        self.owner = add_user(self.storage, 'olga', user_type='provider')

    def make_loop(self, storage=None, **kwargs):
        storage = storage or self.storage
        kwargs.setdefault('settings', self.settings)
        return SimulationLoop(storage, ProviderLocks(), notifier=self.notifier, rng=random.Random(42), **kwargs)

    def test_available_energy_within_capacity_after_many_ticks(self):
        providers = [
            add_provider(self.storage, self.owner.id, available=0.0, production=0.0, max_capacity=2.0),
            add_provider(self.storage, self.owner.id, available=5.0, production=5.0, max_capacity=5.0),
            add_provider(self.storage, self.owner.id, available=1.0, production=9.0, max_capacity=1.5),
        ]
        loop = self.make_loop()
        for _ in range(50):
            loop.tick()
            for p in providers:
                current = self.storage.get_provider(p.id)
                self.assertGreaterEqual(current.available_energy, 0.0)
                self.assertLessEqual(current.available_energy, current.max_capacity)
                self.assertGreaterEqual(current.current_production, 0.0)

    def test_stats_are_recomputed_from_scratch(self):
        add_provider(self.storage, self.owner.id, available=4.0, max_capacity=10.0)
        add_provider(self.storage, self.owner.id, available=6.0, max_capacity=10.0)
        add_provider(self.storage, self.owner.id, available=9.0, is_active=False)
        loop = self.make_loop()
        for _ in range(3):
            stats = loop.tick()
            active = self.storage.list_active_providers(with_available_energy=False)
            total = sum(p.current_production for p in active)
            available = sum(p.available_energy for p in active)
            self.assertAlmostEqual(stats.total_production, total)
            self.assertAlmostEqual(stats.total_consumption, total - available)
            self.assertAlmostEqual(stats.current_flow_rate, total * 0.7)
            self.assertEqual(stats.active_providers, 2)
        self.assertEqual(self.storage.get_community_stats().id, stats.id)

    def test_inactive_provider_is_not_simulated(self):
        idle = add_provider(self.storage, self.owner.id, available=3.0, production=3.0, is_active=False)
        self.make_loop().tick()
        self.assertEqual(self.storage.get_provider(idle.id).current_production, 3.0)

    def test_depleted_provider_is_still_simulated(self):
        depleted = add_provider(self.storage, self.owner.id, available=0.0, production=5.0, max_capacity=10.0)
        self.make_loop().tick()
        self.assertNotEqual(self.storage.get_provider(depleted.id).current_production, 5.0)

    def test_failure_in_one_provider_does_not_abort_tick(self):
        bad = add_provider(self.storage, self.owner.id, available=2.0, production=2.0)
        good = add_provider(self.storage, self.owner.id, available=2.0, production=2.0)
        flaky = FlakyStorage(self.storage.bind, bad.id)
        with self.assertLogs('simulation', level='ERROR'):
            stats = self.make_loop(storage=flaky).tick()
        self.assertEqual(self.storage.get_provider(bad.id).current_production, 2.0)
        self.assertNotEqual(self.storage.get_provider(good.id).current_production, 2.0)
        self.assertEqual(stats.active_providers, 2)

    def test_active_consumers_derived_from_open_requests(self):
        alice = add_user(self.storage, 'alice')
        bob = add_user(self.storage, 'bob')
        add_user(self.storage, 'idle')
        self.storage.create_request(user_id=alice.id, energy_amount=1.0)
        self.storage.create_request(user_id=alice.id, energy_amount=2.0)
        cancelled = self.storage.create_request(user_id=bob.id, energy_amount=1.0)
        self.storage.cancel_request(cancelled.id)
        self.storage.create_request(user_id=bob.id, energy_amount=3.0)
        self.assertEqual(self.make_loop().tick().active_consumers, 2)

    def test_active_consumers_override(self):
        loop = self.make_loop(settings=make_settings(active_consumers=47, rematch_pending_on_tick=False))
        self.assertEqual(loop.tick().active_consumers, 47)

    async def test_run_once_broadcasts_summary(self):
        add_provider(self.storage, self.owner.id, available=4.0, max_capacity=10.0)
        loop = self.make_loop()
        stats = await loop.run_once()
        self.assertEqual(self.notifier.types(), ['energy_data_update'])
        payload = self.notifier.events[0][1]
        self.assertEqual(set(payload), {'totalProduction', 'totalAvailable', 'activeProviders'})
        self.assertAlmostEqual(payload['totalProduction'], stats.total_production)
        self.assertEqual(payload['activeProviders'], 1)

    async def test_run_once_skips_while_previous_tick_running(self):
        """Un tick que superó el timeout sigue en su hilo; el siguiente no se solapa."""
        provider = add_provider(self.storage, self.owner.id, available=4.0, production=4.0, max_capacity=10.0)
        loop = self.make_loop()
        with loop._tick_lock:
            with self.assertLogs('simulation', level='WARNING'):
                result = await loop.run_once()
        self.assertIsNone(result)
        self.assertEqual(self.notifier.events, [])
        self.assertEqual(self.storage.get_provider(provider.id).current_production, 4.0)

        self.assertIsNotNone(await loop.run_once())
        self.assertEqual(self.notifier.types(), ['energy_data_update'])

    async def test_pending_requests_rematched_when_enabled(self):
        consumer = add_user(self.storage, 'carla')
        request = self.storage.create_request(user_id=consumer.id, energy_amount=0.5)
        add_provider(self.storage, self.owner.id, available=0.0, production=8.0, max_capacity=10.0)
        settings = make_settings(active_consumers=None, rematch_pending_on_tick=True, simulation_timeout=5)
        locks = ProviderLocks()
        matching = MatchingEngine(self.storage, locks, notifier=self.notifier, default_price=0.15)
        loop = SimulationLoop(self.storage, locks, notifier=self.notifier, matching=matching,
                              rng=random.Random(5), settings=settings)
        await loop.run_once()
        self.assertEqual(self.storage.get_request(request.id).status, 'matched')
        self.assertEqual(self.notifier.types(), ['energy_data_update', 'match_found'])

    async def test_pending_requests_left_alone_by_default(self):
        consumer = add_user(self.storage, 'carla')
        request = self.storage.create_request(user_id=consumer.id, energy_amount=0.5)
        add_provider(self.storage, self.owner.id, available=0.0, production=8.0, max_capacity=10.0)
        await self.make_loop().run_once()
        self.assertEqual(self.storage.get_request(request.id).status, 'pending')

    async def test_loop_survives_failing_ticks(self):
        loop = self.make_loop()
        calls = []

        async def failing_run_once():
            calls.append(1)
            raise RuntimeError('boom')

        loop.run_once = failing_run_once
        with self.assertLogs('simulation', level='ERROR'):
            task = asyncio.create_task(loop.run())
            await asyncio.sleep(0.05)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task
        self.assertGreaterEqual(len(calls), 2)


if __name__ == '__main__':
    unittest.main()
