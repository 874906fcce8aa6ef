"""Módulo de configuración del servicio de intercambio de energía.

Proporciona lectura de variables de entorno para la base de datos, tokens JWT,
el bucle de simulación, el heartbeat de WebSockets y la política de emparejamiento.

Booleanos aceptados: "1", "true", "yes", "on" (sin distinguir mayúsculas).
"""

import os
from pathlib import Path
from functools import lru_cache
from typing import Optional
from dotenv import load_dotenv

# parse_bool: Interpreta una variable de entorno como booleano con valor por defecto.
def parse_bool(raw: Optional[str], default: bool = False) -> bool:
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')

# parse_optional_int: Devuelve None si la variable está vacía o no es un entero.
def parse_optional_int(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw.strip() == '':
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None

# get_settings: Devuelve (cacheado) la instancia única de Settings.
@lru_cache
def get_settings():
    return Settings()

class Settings:
    """Agrupa todos los parámetros de configuración usados en la aplicación.

    Se inicializa leyendo variables de entorno. Incluye intervalos de los
    temporizadores, factores de la simulación y el precio por defecto.
    """
    def __init__(self):
        # Cargar .env local (aislado al directorio del módulo)
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'energy.db'
        self.database_url = os.getenv('P2P_DB_URL', f"sqlite:///{default_db_path}")
        self.jwt_secret = os.getenv('JWT_SECRET', 'dev-secret-change')
        self.jwt_algorithm = os.getenv('JWT_ALG', 'HS256')
        self.jwt_exp_minutes = int(os.getenv('JWT_EXP_MIN', '60'))
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

        # Simulación
        self.simulation_enabled = parse_bool(os.getenv('SIMULATION_ENABLED'), default=True)
        self.simulation_interval = float(os.getenv('SIMULATION_INTERVAL_SEC', '5'))
        self.simulation_timeout = float(os.getenv('SIMULATION_TIMEOUT_SEC', '4'))
        self.production_jitter = float(os.getenv('PRODUCTION_JITTER_KW', '1.0'))
        self.max_consumption_fraction = float(os.getenv('MAX_CONSUMPTION_FRACTION', '0.3'))
        self.flow_rate_factor = float(os.getenv('FLOW_RATE_FACTOR', '0.7'))
        # None => se deriva de las solicitudes abiertas (ver Storage.count_active_consumers).
        self.active_consumers = parse_optional_int(os.getenv('ACTIVE_CONSUMERS'))
        self.rematch_pending_on_tick = parse_bool(os.getenv('REMATCH_PENDING_ON_TICK'), default=False)

        # Emparejamiento y notificaciones
        self.default_price_per_kwh = float(os.getenv('DEFAULT_PRICE_PER_KWH', '0.15'))
        self.heartbeat_interval = float(os.getenv('HEARTBEAT_INTERVAL_SEC', '30'))
        self.recent_transactions_limit = int(os.getenv('RECENT_TRANSACTIONS_LIMIT', '10'))

        # Servidor
        self.host = os.getenv('HOST', '0.0.0.0')
        self.port = int(os.getenv('PORT', '8000'))
