"""
Shared fixtures for the ComfyUI image generation tool tests.

Provides an in-process fake ComfyUI server (HTTP + WebSocket) whose
event stream can be scripted per test.
"""

import io
import uuid
from typing import Any, Callable, Dict, List

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image


def make_png(size=(8, 8), color="red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


OUTPUT_IMAGE = {"filename": "ComfyUI_00001_.png", "subfolder": "", "type": "output"}


def success_events(prompt_id: str) -> List[Dict[str, Any]]:
    return [
        {"type": "status", "data": {"status": {"exec_info": {"queue_remaining": 1}}}},
        {"type": "execution_start", "data": {"prompt_id": prompt_id}},
        {"type": "executing", "data": {"node": "3", "prompt_id": prompt_id}},
        {"type": "progress", "data": {"value": 1, "max": 2, "node": "3", "prompt_id": prompt_id}},
        {"type": "progress", "data": {"value": 2, "max": 2, "node": "3", "prompt_id": prompt_id}},
        {
            "type": "executed",
            "data": {"node": "9", "output": {"images": [OUTPUT_IMAGE]}, "prompt_id": prompt_id},
        },
        {"type": "executing", "data": {"node": None, "prompt_id": prompt_id}},
    ]


def failure_events(prompt_id: str) -> List[Dict[str, Any]]:
    return [
        {"type": "execution_start", "data": {"prompt_id": prompt_id}},
        {"type": "progress", "data": {"value": 1, "max": 6, "node": "3", "prompt_id": prompt_id}},
        {
            "type": "execution_error",
            "data": {
                "prompt_id": prompt_id,
                "node_id": "3",
                "exception_message": "CUDA out of memory",
            },
        },
    ]


class FakeComfyUI:
    """Scriptable stand-in for the ComfyUI /prompt, /ws, /view and /history endpoints."""

    def __init__(self) -> None:
        self.url = ""
        self.events: Callable[[str], List[Dict[str, Any]]] = success_events
        self.queued: List[Dict[str, Any]] = []
        self.view_requests: List[Dict[str, str]] = []
        self.history: Dict[str, Any] = {}
        self.image_bytes = make_png()
        self.view_status = 200
        self.view_content_type = "image/png"
        self.prompt_status = 200
        self.sockets: Dict[str, web.WebSocketResponse] = {}

        self.app = web.Application()
        self.app.router.add_post("/prompt", self.handle_prompt)
        self.app.router.add_get("/ws", self.handle_ws)
        self.app.router.add_get("/view", self.handle_view)
        self.app.router.add_get("/history/{prompt_id}", self.handle_history)

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets[request.query["clientId"]] = ws
        async for _ in ws:
            pass
        return ws

    async def handle_prompt(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.queued.append(body)
        if self.prompt_status != 200:
            return web.json_response(
                {"error": {"message": "Prompt outputs failed validation"}},
                status=self.prompt_status,
            )

        prompt_id = str(uuid.uuid4())
        ws = self.sockets.get(body["client_id"])
        if ws is not None:
            for event in self.events(prompt_id):
                await ws.send_json(event)
        return web.json_response({"prompt_id": prompt_id, "number": len(self.queued)})

    async def handle_view(self, request: web.Request) -> web.Response:
        self.view_requests.append(dict(request.query))
        if self.view_status != 200:
            return web.Response(status=self.view_status, text="not found")
        return web.Response(body=self.image_bytes, content_type=self.view_content_type)

    async def handle_history(self, request: web.Request) -> web.Response:
        # ComfyUI keys the history response by prompt id
        prompt_id = request.match_info["prompt_id"]
        if prompt_id not in self.history:
            return web.json_response({})
        return web.json_response({prompt_id: self.history[prompt_id]})


@pytest_asyncio.fixture
async def comfyui():
    fake = FakeComfyUI()
    server = TestServer(fake.app)
    await server.start_server()
    fake.url = str(server.make_url("/")).rstrip("/")
    yield fake
    await server.close()


@pytest.fixture
def output_dirs(tmp_path):
    """Client root and images root laid out like a web client's public folder."""
    client_path = tmp_path / "client"
    output_path = client_path / "public" / "images"
    return str(client_path), str(output_path)
