"""Módulo de acceso a la base de datos.

Define el motor y utilidades de sesión para realizar operaciones CRUD.
"""

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session
from config import get_settings

settings = get_settings()

# make_engine: Crea un motor; SQLite en memoria comparte una única conexión entre hilos.
def make_engine(url: str):
    if not url.startswith('sqlite'):
        return create_engine(url, echo=False)
    kwargs = {'connect_args': {'check_same_thread': False}}
    if url in ('sqlite://', 'sqlite:///:memory:'):
        kwargs['poolclass'] = StaticPool
    return create_engine(url, echo=False, **kwargs)

engine = make_engine(settings.database_url)

# init_db: Crea todas las tablas definidas en los modelos si no existen.
def init_db(bind=None):
    # Importar modelos para registrar las tablas en la metadata.
    import models  # noqa: F401
    SQLModel.metadata.create_all(bind or engine)

class DBSession:
    """Context manager para manejar sesiones.

    Al salir del contexto realiza rollback si hubo excepción y cierra la sesión.
    Los objetos no se expiran al hacer commit para poder leerlos fuera del bloque.
    """
    def __init__(self, bind=None):
        self.bind = bind or engine

    def __enter__(self):
        self.session = Session(self.bind, expire_on_commit=False)
        return self.session

    def __exit__(self, exc_type, exc, tb):
        if exc:
            self.session.rollback()
        self.session.close()
