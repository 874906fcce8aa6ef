"""Pasarela de persistencia: operaciones CRUD tipadas sobre los cinco tipos de registro.

Cada método abre su propia sesión (transaccional a nivel de fila) y devuelve el
registro o None cuando no existe. Las dos consultas masivas que usa el núcleo son
list_active_providers y list_pending_requests.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from models import (
    User, EnergyProvider, EnergyRequest, EnergyTransaction, CommunityStats,
    REQUEST_TRANSITIONS,
)
from database import DBSession

logger = logging.getLogger(__name__)

# La fila de estadísticas de la comunidad siempre usa esta clave primaria.
STATS_ROW_ID = 1


class RecordNotFound(Exception):
    """Se lanza cuando una operación de escritura apunta a un registro inexistente."""

    def __init__(self, kind, record_id):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class InvalidTransition(Exception):
    """Se lanza ante un cambio de estado no permitido de una solicitud."""

    def __init__(self, request_id, current, target):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(f"Request {request_id}: cannot move from {current} to {target}")


class InsufficientEnergy(Exception):
    """Se lanza cuando el proveedor ya no tiene energía suficiente al confirmar un emparejamiento."""

    def __init__(self, provider_id, requested, available):
        self.provider_id = provider_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Provider {provider_id}: requested {requested}, available {available}"
        )


class Storage:
    """Agrupa el acceso a usuarios, proveedores, solicitudes, transacciones y estadísticas."""

    def __init__(self, bind=None):
        self.bind = bind

    def session(self):
        return DBSession(self.bind)

    def _add(self, record):
        with self.session() as s:
            s.add(record)
            s.commit()
            s.refresh(record)
            return record

    # ------------------------------ Users ------------------------------
    def get_user(self, user_id: int) -> Optional[User]:
        with self.session() as s:
            return s.get(User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.session() as s:
            return s.exec(select(User).where(User.username == username)).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.session() as s:
            return s.exec(select(User).where(User.email == email)).first()

    def create_user(self, **fields) -> User:
        return self._add(User(**fields))

    def update_user(self, user_id: int, **updates) -> Optional[User]:
        with self.session() as s:
            user = s.get(User, user_id)
            if not user:
                return None
            for key, value in updates.items():
                setattr(user, key, value)
            s.add(user)
            s.commit()
            s.refresh(user)
            return user

    # ---------------------------- Providers ----------------------------
    def get_provider(self, provider_id: int) -> Optional[EnergyProvider]:
        with self.session() as s:
            return s.get(EnergyProvider, provider_id)

    def list_providers_by_user(self, user_id: int) -> List[EnergyProvider]:
        with self.session() as s:
            statement = select(EnergyProvider).where(EnergyProvider.user_id == user_id).order_by(EnergyProvider.id)
            return list(s.exec(statement).all())

    def list_active_providers(self, with_available_energy: bool = True) -> List[EnergyProvider]:
        """Proveedores activos ordenados por energía disponible descendente.

        Con with_available_energy=True (consulta del emparejamiento) solo se devuelven
        los que tienen energía disponible positiva; la simulación pide todos.
        Empates por energía se ordenan por id ascendente.
        """
        with self.session() as s:
            statement = select(EnergyProvider).where(EnergyProvider.is_active == True)  # noqa: E712
            if with_available_energy:
                statement = statement.where(EnergyProvider.available_energy > 0)
            statement = statement.order_by(EnergyProvider.available_energy.desc(), EnergyProvider.id)
            return list(s.exec(statement).all())

    def create_provider(self, **fields) -> EnergyProvider:
        return self._add(EnergyProvider(**fields))

    def update_provider(self, provider_id: int, **updates) -> Optional[EnergyProvider]:
        with self.session() as s:
            provider = s.get(EnergyProvider, provider_id)
            if not provider:
                return None
            for key, value in updates.items():
                setattr(provider, key, value)
            provider.last_updated = datetime.utcnow()
            s.add(provider)
            s.commit()
            s.refresh(provider)
            return provider

    def update_provider_energy(self, provider_id: int, current_production: float, available_energy: float) -> Optional[EnergyProvider]:
        return self.update_provider(
            provider_id,
            current_production=current_production,
            available_energy=available_energy,
        )

    # ----------------------------- Requests ----------------------------
    def get_request(self, request_id: int) -> Optional[EnergyRequest]:
        with self.session() as s:
            return s.get(EnergyRequest, request_id)

    def list_requests_by_user(self, user_id: int) -> List[EnergyRequest]:
        with self.session() as s:
            statement = (
                select(EnergyRequest)
                .where(EnergyRequest.user_id == user_id)
                .order_by(EnergyRequest.created_at.desc(), EnergyRequest.id.desc())
            )
            return list(s.exec(statement).all())

    def list_pending_requests(self) -> List[EnergyRequest]:
        """Solicitudes pendientes, de la más reciente a la más antigua."""
        with self.session() as s:
            statement = (
                select(EnergyRequest)
                .where(EnergyRequest.status == 'pending')
                .order_by(EnergyRequest.created_at.desc(), EnergyRequest.id.desc())
            )
            return list(s.exec(statement).all())

    def create_request(self, **fields) -> EnergyRequest:
        fields.setdefault('status', 'pending')
        return self._add(EnergyRequest(**fields))

    def update_request(self, request_id: int, **updates) -> Optional[EnergyRequest]:
        with self.session() as s:
            request = s.get(EnergyRequest, request_id)
            if not request:
                return None
            for key, value in updates.items():
                setattr(request, key, value)
            s.add(request)
            s.commit()
            s.refresh(request)
            return request

    def count_active_consumers(self) -> int:
        """Número de usuarios distintos con solicitudes pending o matched."""
        with self.session() as s:
            statement = (
                select(func.count(func.distinct(EnergyRequest.user_id)))
                .where(EnergyRequest.status.in_(('pending', 'matched')))
            )
            return int(s.exec(statement).one() or 0)

    def _transition(self, s, request_id: int, target: str) -> EnergyRequest:
        request = s.get(EnergyRequest, request_id)
        if not request:
            raise RecordNotFound('EnergyRequest', request_id)
        if target not in REQUEST_TRANSITIONS.get(request.status, ()):
            raise InvalidTransition(request_id, request.status, target)
        request.status = target
        s.add(request)
        return request

    def fulfill_request(self, request_id: int) -> EnergyRequest:
        """matched -> fulfilled; la transacción asociada pasa a completed."""
        with self.session() as s:
            request = self._transition(s, request_id, 'fulfilled')
            now = datetime.utcnow()
            for tx in s.exec(select(EnergyTransaction).where(EnergyTransaction.request_id == request_id)).all():
                tx.status = 'completed'
                tx.start_time = tx.start_time or tx.created_at
                tx.end_time = now
                s.add(tx)
            s.commit()
            s.refresh(request)
            return request

    def cancel_request(self, request_id: int) -> EnergyRequest:
        """pending|matched -> cancelled; una transacción aún abierta pasa a failed."""
        with self.session() as s:
            request = self._transition(s, request_id, 'cancelled')
            statement = select(EnergyTransaction).where(
                EnergyTransaction.request_id == request_id,
                EnergyTransaction.status.in_(('pending', 'active')),
            )
            for tx in s.exec(statement).all():
                tx.status = 'failed'
                tx.end_time = datetime.utcnow()
                s.add(tx)
            s.commit()
            s.refresh(request)
            return request

    # ------------------------------ Matches ----------------------------
    def apply_match(self, request_id: int, provider_id: int, price_per_kwh: float) -> Tuple[EnergyRequest, EnergyTransaction, EnergyProvider]:
        """Registra un emparejamiento en una sola sesión.

        Relee el proveedor bloqueado y vuelve a comprobar que sigue activo y con
        energía suficiente; si no, lanza InsufficientEnergy sin escribir nada.
        Después marca la solicitud como matched, crea la transacción y descuenta la
        energía del proveedor.
        """
        with self.session() as s:
            request = self._transition(s, request_id, 'matched')
            statement = select(EnergyProvider).where(EnergyProvider.id == provider_id).with_for_update()
            provider = s.exec(statement).first()
            if not provider:
                raise RecordNotFound('EnergyProvider', provider_id)
            available = provider.available_energy or 0.0
            if not provider.is_active or available < request.energy_amount:
                raise InsufficientEnergy(provider_id, request.energy_amount, available)
            request.matched_provider_id = provider.id

            tx = EnergyTransaction(
                request_id=request.id,
                provider_id=provider.id,
                consumer_id=request.user_id,
                energy_amount=request.energy_amount,
                price_per_kwh=price_per_kwh,
                total_price=request.energy_amount * price_per_kwh,
                status='pending',
            )
            s.add(tx)

            provider.available_energy = max(0.0, available - request.energy_amount)
            provider.last_updated = datetime.utcnow()
            s.add(provider)

            s.commit()
            s.refresh(request)
            s.refresh(tx)
            s.refresh(provider)
            return request, tx, provider

    # --------------------------- Transactions --------------------------
    def get_transaction(self, transaction_id: int) -> Optional[EnergyTransaction]:
        with self.session() as s:
            return s.get(EnergyTransaction, transaction_id)

    def list_transactions_by_user(self, user_id: int) -> List[EnergyTransaction]:
        with self.session() as s:
            statement = (
                select(EnergyTransaction)
                .where(EnergyTransaction.consumer_id == user_id)
                .order_by(EnergyTransaction.created_at.desc(), EnergyTransaction.id.desc())
            )
            return list(s.exec(statement).all())

    def list_transactions_by_request(self, request_id: int) -> List[EnergyTransaction]:
        with self.session() as s:
            statement = select(EnergyTransaction).where(EnergyTransaction.request_id == request_id)
            return list(s.exec(statement).all())

    def list_recent_transactions(self, limit: int = 10) -> List[EnergyTransaction]:
        with self.session() as s:
            statement = (
                select(EnergyTransaction)
                .order_by(EnergyTransaction.created_at.desc(), EnergyTransaction.id.desc())
                .limit(limit)
            )
            return list(s.exec(statement).all())

    def create_transaction(self, **fields) -> EnergyTransaction:
        return self._add(EnergyTransaction(**fields))

    def update_transaction(self, transaction_id: int, **updates) -> Optional[EnergyTransaction]:
        with self.session() as s:
            tx = s.get(EnergyTransaction, transaction_id)
            if not tx:
                return None
            for key, value in updates.items():
                setattr(tx, key, value)
            s.add(tx)
            s.commit()
            s.refresh(tx)
            return tx

    # -------------------------- Community stats ------------------------
    def _load_stats(self, s) -> Optional[CommunityStats]:
        return s.get(CommunityStats, STATS_ROW_ID)

    def get_community_stats(self) -> Optional[CommunityStats]:
        with self.session() as s:
            return self._load_stats(s)

    def upsert_community_stats(self, **values) -> CommunityStats:
        """Actualiza la fila única de estadísticas (id fijo) o la crea si no existe.

        Si otra sesión inserta la fila entre la lectura y el commit, la clave
        primaria fija provoca IntegrityError y se repite como actualización.
        """
        for attempt in range(2):
            try:
                with self.session() as s:
                    stats = self._load_stats(s)
                    if stats is None:
                        stats = CommunityStats(id=STATS_ROW_ID)
                    for key, value in values.items():
                        setattr(stats, key, value)
                    stats.updated_at = datetime.utcnow()
                    s.add(stats)
                    s.commit()
                    s.refresh(stats)
                    return stats
            except IntegrityError:
                if attempt:
                    raise
                logger.info("Community stats row created concurrently; retrying as update")
