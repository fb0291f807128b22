# server.py
# --------------------------------------------------------------------
# Websocket signaling server: two peers per room, relays offer/answer/ICE
# --------------------------------------------------------------------

import argparse, asyncio, json, logging, os
from http import HTTPStatus

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

import envelopes
from rooms import RoomRegistry

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))

logger = logging.getLogger(__name__)


class SignalingServer:
    """Routing glue between websocket connections and the room registry."""

    def __init__(self, registry: RoomRegistry = None):
        self.registry = registry if registry is not None else RoomRegistry()

    async def handler(self, ws):
        # identity established by this connection's last successful join
        ident = {"room": None, "id": None}
        logger.info("New client connected")
        try:
            async for raw in ws:
                try:
                    msg = envelopes.decode(raw)
                except envelopes.EnvelopeError as e:
                    logger.warning("Dropping malformed envelope: %s", e)
                    continue
                logger.debug("Received %s from room %s", msg["type"], msg.get("room"))
                await self.dispatch(ws, ident, msg)
        except ConnectionClosed:
            pass
        finally:
            logger.info("Client disconnected")
            await self._leave(ws, ident)

    async def dispatch(self, ws, ident: dict, msg: dict):
        t = msg["type"]
        if t == envelopes.JOIN:
            await self._join(ws, ident, msg)
        elif t in envelopes.RELAYED:
            if ident["room"] is None:
                return
            await self.registry.relay(ident["room"], ident["id"], msg, transport=ws)
        elif t == envelopes.LEAVE:
            await self._leave(ws, ident)
        else:
            logger.info("Unknown message type: %s", t)

    async def _join(self, ws, ident, msg):
        room, client_id = msg.get("room"), msg.get("id")
        if not isinstance(room, str) or not room or not isinstance(client_id, str) or not client_id:
            await ws.send(envelopes.encode(envelopes.error(envelopes.INVALID_JOIN)))
            return
        if ident["room"] is not None and (ident["room"], ident["id"]) != (room, client_id):
            await self._leave(ws, ident)
        if await self.registry.join(room, client_id, ws):
            ident["room"], ident["id"] = room, client_id

    async def _leave(self, ws, ident):
        if ident["room"] is None:
            return
        room, client_id = ident["room"], ident["id"]
        ident["room"] = ident["id"] = None
        await self.registry.leave(room, client_id, transport=ws)

    def process_request(self, connection, request):
        if request.path == "/healthz":
            return connection.respond(HTTPStatus.OK, json.dumps(self.registry.stats()) + "\n")
        return None

    def serve(self, host: str = HOST, port: int = PORT):
        return serve(self.handler, host, port, process_request=self.process_request)


async def main(host: str = HOST, port: int = PORT):
    server = SignalingServer()
    async with server.serve(host, port):
        logger.info("WebSocket signaling server running on port %d", port)
        await asyncio.Future()        # run forever


def cli(argv=None):
    parser = argparse.ArgumentParser(description="Two-party signaling server")
    parser.add_argument("--host", default=HOST, help="Interface to bind")
    parser.add_argument("--port", type=int, default=PORT, help="Port to listen on (env PORT)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper())
    try:
        asyncio.run(main(args.host, args.port))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    cli()
