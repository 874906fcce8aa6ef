import os

# Base de datos en memoria y sin simulación de fondo para toda la suite.
os.environ.setdefault('P2P_DB_URL', 'sqlite://')
os.environ.setdefault('SIMULATION_ENABLED', 'false')
os.environ.setdefault('LOG_LEVEL', 'WARNING')
