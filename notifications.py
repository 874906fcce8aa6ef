"""Difusión de eventos a los clientes WebSocket conectados.

El registro de conexiones es un objeto con ciclo de vida propio (se crea al
arrancar la aplicación y se cierra al detenerla). Cada mensaje es un objeto JSON
{ "type": str, "data": object }.

La vivacidad a nivel de transporte la cubren los ping frames de uvicorn
(ws_ping_interval), que los navegadores contestan solos; un socket medio abierto
acaba en desconexión o en error de envío y se elimina. Además se envía
{"type": "ping"} en cada ciclo: solo los clientes que alguna vez respondieron
{"type": "pong"} se expulsan si dejan de responder.
"""

import asyncio
import json
import logging
from typing import Any, List, Optional
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class ClientConnection:
    """Estado de un cliente conectado.

    Guarda el socket, la identidad enviada en el handshake "auth", si el cliente
    contesta pings de aplicación y si respondió al último.
    """
    def __init__(self, websocket):
        self.websocket = websocket
        self.user_id: Optional[int] = None
        self.is_alive = True
        self.answers_pings = False

    async def send(self, message: str):
        await self.websocket.send_text(message)

    async def close(self):
        await self.websocket.close()

    # to_dict: Serializa el estado de la conexión para diagnóstico.
    def to_dict(self):
        return {'user_id': self.user_id, 'is_alive': self.is_alive, 'answers_pings': self.answers_pings}


def encode_event(event_type: str, payload: Any) -> str:
    return json.dumps({'type': event_type, 'data': jsonable_encoder(payload)})


class NotificationHub:
    """Mantiene las conexiones abiertas y difunde eventos a todas ellas."""

    def __init__(self):
        self.connections: List[ClientConnection] = []

    def __len__(self):
        return len(self.connections)

    def register(self, websocket) -> ClientConnection:
        connection = ClientConnection(websocket)
        self.connections.append(connection)
        return connection

    def unregister(self, connection: ClientConnection):
        if connection in self.connections:
            self.connections.remove(connection)

    async def broadcast(self, event_type: str, payload: Any) -> int:
        """Envía el evento a cada conexión como máximo una vez.

        Las conexiones que fallan al enviar se eliminan; el error nunca llega al
        llamador. Devuelve el número de entregas correctas.
        """
        message = encode_event(event_type, payload)
        delivered = 0
        for connection in list(self.connections):
            try:
                await connection.send(message)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping connection user=%s after send error: %s", connection.user_id, e)
                self.unregister(connection)
        return delivered

    def handle_message(self, connection: ClientConnection, raw: str):
        """Procesa un mensaje entrante: handshake de identidad o respuesta al ping."""
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed socket message: %r", raw[:200])
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring socket message that is not an object")
            return
        kind = data.get('type')
        if kind == 'auth':
            user_id = data.get('userId')
            if isinstance(user_id, int) and not isinstance(user_id, bool):
                connection.user_id = user_id
            else:
                logger.warning("Ignoring auth message with invalid userId: %r", user_id)
        elif kind == 'pong':
            connection.answers_pings = True
            connection.is_alive = True

    async def sweep(self) -> int:
        """Un ciclo de heartbeat.

        Cierra y elimina las conexiones que contestan pings pero no respondieron al
        anterior; a todas las demás les envía un nuevo ping y elimina aquellas en las
        que el envío falla. Los clientes que nunca enviaron pong solo se eliminan por
        error de envío o desconexión. Devuelve cuántas conexiones se eliminaron.
        """
        removed = 0
        ping = encode_event('ping', {})
        for connection in list(self.connections):
            if connection.answers_pings and not connection.is_alive:
                self.unregister(connection)
                removed += 1
                logger.info("Closing unresponsive connection user=%s", connection.user_id)
                try:
                    await connection.close()
                except Exception as e:
                    logger.debug("Error closing dead connection: %s", e)
                continue
            connection.is_alive = False
            try:
                await connection.send(ping)
            except Exception as e:
                logger.warning("Dropping connection user=%s after ping error: %s", connection.user_id, e)
                self.unregister(connection)
                removed += 1
        return removed

    async def run_heartbeat(self, interval: float):
        """Bucle del heartbeat; un fallo en un ciclo no detiene el bucle."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    async def close_all(self):
        for connection in list(self.connections):
            self.unregister(connection)
            try:
                await connection.close()
            except Exception as e:
                logger.debug("Error closing connection on shutdown: %s", e)
