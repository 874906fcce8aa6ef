"""Modelos de datos persistentes.

Incluye usuarios, proveedores de energía, solicitudes, transacciones y la
fila única de estadísticas de la comunidad.
"""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

# Transiciones permitidas de una solicitud; fulfilled y cancelled son terminales.
REQUEST_TRANSITIONS = {
    'pending': ('matched', 'cancelled'),
    'matched': ('fulfilled', 'cancelled'),
    'fulfilled': (),
    'cancelled': (),
}

class User(SQLModel, table=True):
    """Representa un usuario registrado.

    Campos:
      username / email: Únicos.
      password_hash: Hash bcrypt de la contraseña.
      user_type: provider | consumer | both.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    display_name: str
    user_type: str = Field(default='consumer')
    location: Optional[str] = None
    profile_image: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

class EnergyProvider(SQLModel, table=True):
    """Dispositivo/cuenta que produce energía para el pool.

    Invariante: 0 <= available_energy <= max_capacity.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    provider_name: str
    energy_type: str  # solar | wind | battery
    max_capacity: float
    current_production: float = 0.0
    available_energy: float = Field(default=0.0, index=True)
    price_per_kwh: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_active: bool = Field(default=True, index=True)
    last_updated: datetime = Field(default_factory=datetime.utcnow)

class EnergyRequest(SQLModel, table=True):
    """Solicitud de energía de un consumidor."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    energy_amount: float
    urgency_level: str = Field(default='normal')  # immediate | urgent | normal | scheduled
    preferred_time_slot: Optional[str] = None
    max_price: Optional[float] = None
    status: str = Field(default='pending', index=True)  # pending | matched | fulfilled | cancelled
    matched_provider_id: Optional[int] = Field(default=None, foreign_key='energyprovider.id')
    created_at: datetime = Field(default_factory=datetime.utcnow)
    requested_for: Optional[datetime] = None

class EnergyTransaction(SQLModel, table=True):
    """Registro creado exactamente una vez por cada emparejamiento exitoso.

    total_price = energy_amount * price_per_kwh en el momento de la creación.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(foreign_key='energyrequest.id', index=True)
    provider_id: int = Field(foreign_key='energyprovider.id', index=True)
    consumer_id: int = Field(foreign_key='user.id', index=True)
    energy_amount: float
    price_per_kwh: float
    total_price: float
    status: str = Field(default='pending')  # pending | active | completed | failed
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

class CommunityStats(SQLModel, table=True):
    """Fila lógica única con los agregados de la comunidad (semántica upsert)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    total_production: float = 0.0
    total_consumption: float = 0.0
    active_providers: int = 0
    active_consumers: int = 0
    current_flow_rate: float = 0.0
    updated_at: datetime = Field(default_factory=datetime.utcnow)
