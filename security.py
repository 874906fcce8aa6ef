"""Funciones de seguridad: hashing de contraseñas y manejo de JWT.

Se utiliza bcrypt vía passlib para almacenar contraseñas y PyJWT para los tokens
que devuelve /auth/login.
"""

from datetime import datetime, timedelta
from typing import Optional
from passlib.context import CryptContext
import jwt
from config import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
settings = get_settings()

# _truncate: bcrypt solo usa los primeros 72 bytes de la contraseña.
def _truncate(password: str) -> str:
    return password.encode('utf-8')[:72].decode('utf-8', errors='ignore')

# hash_password: Genera hash bcrypt de una contraseña en texto plano.
def hash_password(password: str) -> str:
    return pwd_context.hash(_truncate(password))

# verify_password: Verifica si la contraseña suministrada coincide con el hash.
def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(_truncate(password), password_hash)

# create_token: JWT con el username como sujeto y el tipo de usuario.
def create_token(username: str, user_type: str) -> str:
    exp = datetime.utcnow() + timedelta(minutes=settings.jwt_exp_minutes)
    payload = {"sub": username, "user_type": user_type, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

# decode_token: Decodifica el JWT y retorna payload o None si inválido/expirado.
def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None
