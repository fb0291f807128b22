"""
Flask front door for one call client.

The browser (or any HTTP client) drives a single `PeerConnector` through JSON
POST routes and watches its status stream over the `/ws` websocket. The
connector lives on its own asyncio loop in a background thread; routes hand
coroutines to that loop and wait for the result.
"""
import argparse
import asyncio
import json
import logging
import queue
import threading

from flask import Flask, jsonify, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from envelopes import SignalingError
from peer_connector import SIGNAL_URL, PeerConnector

logger = logging.getLogger(__name__)


class CallController:
    """Owns the background event loop and the connector running on it."""

    def __init__(self, signal_url: str = SIGNAL_URL, **connector_kwargs):
        self.gui_q = queue.Queue()
        self.loop = asyncio.new_event_loop()
        threading.Thread(target=self.loop.run_forever, daemon=True).start()
        self.connector = PeerConnector(self.gui_q, signal_url=signal_url, **connector_kwargs)

    def _submit(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()

    def join(self, room: str, name: str) -> str:
        return self._submit(self.connector.join(room, name))

    def leave(self):
        self._submit(self.connector.leave())

    def toggle(self, kind: str) -> bool:
        async def _toggle():
            if kind == "audio":
                return self.connector.toggle_audio()
            return self.connector.toggle_video()
        return self._submit(_toggle())

    def state(self) -> dict:
        return self.connector.state()


def create_app(controller: CallController = None) -> Flask:
    app = Flask(__name__)
    sock = Sock(app)
    app.extensions["call_controller"] = controller = controller or CallController()

    @app.route('/join', methods=['POST'])
    def join_route():
        """
        Joins a room. Expects JSON: {"room": "...", "name": "..."}.
        Returns {"status": "joining", "id": ...} or a 400 with the reason.
        """
        data = request.get_json(silent=True) or {}
        try:
            client_id = controller.join(data.get('room', ''), data.get('name', ''))
        except SignalingError as e:
            return jsonify({"status": "error", "message": str(e)}), 400
        return jsonify({"status": "joining", "id": client_id})

    @app.route('/leave', methods=['POST'])
    def leave_route():
        controller.leave()
        return jsonify({"status": "left"})

    @app.route('/toggle-audio', methods=['POST'])
    def toggle_audio_route():
        return jsonify({"audio": controller.toggle("audio")})

    @app.route('/toggle-video', methods=['POST'])
    def toggle_video_route():
        return jsonify({"video": controller.toggle("video")})

    @app.route('/state')
    def state_route():
        return jsonify(controller.state())

    @sock.route('/ws')
    def status_stream(ws):
        # forwards connector posts ({"kind", "data"}) to the client as they arrive
        logger.info("Status websocket connected")
        try:
            while ws.connected:
                try:
                    item = controller.gui_q.get(timeout=0.5)
                except queue.Empty:
                    continue
                ws.send(json.dumps(item))
        except ConnectionClosed:
            pass
        logger.info("Status websocket closed")

    return app


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Call client control server')
    parser.add_argument('--port', type=int, default=5000, help='Port to run the server on')
    parser.add_argument('--signal-url', default=SIGNAL_URL, help='Signaling server websocket URL')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    app = create_app(CallController(args.signal_url))
    app.run(host='0.0.0.0', port=args.port, debug=False, use_reloader=False)
