"""
title: ComfyUI Image Generation Tool
description: Generate images from a prompt/negative prompt pair with a ComfyUI Stable Diffusion 1.5 workflow. Uses ComfyUI HTTP+WebSocket API, randomizes seed, and returns a markdown image link, a stored file record, or agent content blocks.
author: Haervwe
author_url: https://github.com/Haervwe/open-webui-tools/
funding_url: https://github.com/Haervwe/open-webui-tools
version: 0.1.0
license: MIT
"""

import asyncio
import base64
import inspect
import io
import json
import logging
import os
import random
import uuid
import aiohttp

from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import quote
from pydantic import BaseModel, Field
from fastapi import Request, UploadFile
from PIL import Image
from PIL.PngImagePlugin import PngInfo

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


API_ERROR_MESSAGE = "Error making API request."

DISPLAY_MESSAGE = (
    "ComfyUI displayed an image. All generated images are already plainly visible, "
    "so don't repeat the descriptions in detail. Do not list download links as they "
    "are available in the UI already. The user may download the images by clicking "
    "on them, but do not mention anything about downloading to the user."
)

DEFAULT_MIME_TYPE = "image/png"
DEFAULT_CHECKPOINT = "sd-v1-5-pruned-emaonly-fp16.safetensors"

SEED_MIN = 10_000_000_000
SEED_MAX = 999_999_999_999

DEFAULT_SD15_T2I_WORKFLOW: Dict[str, Any] = {
    "3": {
        "inputs": {
            "seed": 0,
            "steps": 20,
            "cfg": 8,
            "sampler_name": "euler",
            "scheduler": "normal",
            "denoise": 1,
            "model": ["4", 0],
            "positive": ["6", 0],
            "negative": ["7", 0],
            "latent_image": ["5", 0],
        },
        "class_type": "KSampler",
        "_meta": {"title": "KSampler"},
    },
    "4": {
        "inputs": {"ckpt_name": DEFAULT_CHECKPOINT},
        "class_type": "CheckpointLoaderSimple",
        "_meta": {"title": "Load Checkpoint"},
    },
    "5": {
        "inputs": {"width": 512, "height": 512, "batch_size": 1},
        "class_type": "EmptyLatentImage",
        "_meta": {"title": "Empty Latent Image"},
    },
    "6": {
        "inputs": {"text": "", "clip": ["4", 1]},
        "class_type": "CLIPTextEncode",
        "_meta": {"title": "CLIP Text Encode (Positive Prompt)"},
    },
    "7": {
        "inputs": {"text": "", "clip": ["4", 1]},
        "class_type": "CLIPTextEncode",
        "_meta": {"title": "CLIP Text Encode (Negative Prompt)"},
    },
    "8": {
        "inputs": {"samples": ["3", 0], "vae": ["4", 2]},
        "class_type": "VAEDecode",
        "_meta": {"title": "VAE Decode"},
    },
    "9": {
        "inputs": {"filename_prefix": "ComfyUI", "images": ["8", 0]},
        "class_type": "SaveImage",
        "_meta": {"title": "Save Image"},
    },
}


# --- Errors ---


class ComfyUIToolError(Exception):
    """Base exception for the ComfyUI image generation tool."""

    pass


class MissingConfiguration(ComfyUIToolError):
    """No ComfyUI URL was configured and deferred configuration is not allowed."""

    pass


class TemplateError(ComfyUIToolError):
    """A workflow template declares a slot that does not resolve to a node input."""

    pass


class BuildIncomplete(ComfyUIToolError):
    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__(f"Unbound workflow slots: {', '.join(missing)}")


class GenerationFailed(ComfyUIToolError):
    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class FetchFailed(ComfyUIToolError):
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class MetadataParseFailed(ComfyUIToolError):
    pass


class PersistenceFailed(ComfyUIToolError):
    pass


# --- Workflow template and graph builder ---


@dataclass(frozen=True)
class SlotAddress:
    node_id: str
    input_name: str


@dataclass
class WorkflowGraph:
    nodes: Dict[str, Any]
    output_node_id: str


@dataclass
class WorkflowTemplate:
    """A static ComfyUI API workflow plus the named input slots callers may bind.

    Slot addresses are checked against the nodes when the template is created,
    so a typo in a node id or input name fails at import time instead of on
    the first generation.
    """

    name: str
    nodes: Dict[str, Any]
    slots: Dict[str, SlotAddress]
    output_node_id: str

    def __post_init__(self) -> None:
        for slot, address in self.slots.items():
            node = self.nodes.get(address.node_id)
            if node is None:
                raise TemplateError(
                    f"Slot '{slot}' of workflow '{self.name}' points at missing node {address.node_id}"
                )
            if address.input_name not in node.get("inputs", {}):
                raise TemplateError(
                    f"Slot '{slot}' of workflow '{self.name}' points at missing input "
                    f"'{address.input_name}' on node {address.node_id}"
                )
        if self.output_node_id not in self.nodes:
            raise TemplateError(
                f"Output node {self.output_node_id} not found in workflow '{self.name}'"
            )

    def builder(self) -> "GraphBuilder":
        return GraphBuilder(self)


class GraphBuilder:
    def __init__(self, template: WorkflowTemplate):
        self.template = template
        self._bindings: Dict[str, Any] = {}

    def input(self, slot: str, value: Any) -> "GraphBuilder":
        if slot not in self.template.slots:
            raise KeyError(f"Workflow '{self.template.name}' has no slot '{slot}'")
        self._bindings[slot] = value
        return self

    def build(self) -> WorkflowGraph:
        missing = sorted(set(self.template.slots) - set(self._bindings))
        if missing:
            raise BuildIncomplete(missing)

        nodes = json.loads(json.dumps(self.template.nodes))
        for slot, value in self._bindings.items():
            address = self.template.slots[slot]
            nodes[address.node_id]["inputs"][address.input_name] = value
        return WorkflowGraph(nodes=nodes, output_node_id=self.template.output_node_id)


SD15_T2I_TEMPLATE = WorkflowTemplate(
    name="sd15-txt2img",
    nodes=DEFAULT_SD15_T2I_WORKFLOW,
    slots={
        "positive": SlotAddress("6", "text"),
        "negative": SlotAddress("7", "text"),
        "checkpoint": SlotAddress("4", "ckpt_name"),
        "seed": SlotAddress("3", "seed"),
        "step": SlotAddress("3", "steps"),
        "cfg": SlotAddress("3", "cfg"),
        "sampler": SlotAddress("3", "sampler_name"),
        "scheduler": SlotAddress("3", "scheduler"),
        "width": SlotAddress("5", "width"),
        "height": SlotAddress("5", "height"),
        "batch": SlotAddress("5", "batch_size"),
    },
    output_node_id="9",
)


def random_seed() -> int:
    return random.randint(SEED_MIN, SEED_MAX)


class GenerationRequest(BaseModel):
    prompt: str
    negative_prompt: str = ""
    width: int = 512
    height: int = 512
    seed: int = Field(default_factory=random_seed)
    steps: int = 6
    cfg: float = 1.0
    sampler_name: str = "euler"
    scheduler: str = "normal"
    checkpoint: str = DEFAULT_CHECKPOINT
    batch_size: int = 1


def prepare_workflow(
    template: WorkflowTemplate, request: GenerationRequest
) -> WorkflowGraph:
    """Bind a generation request into every slot of the template"""
    return (
        template.builder()
        .input("checkpoint", request.checkpoint)
        .input("seed", request.seed)
        .input("step", request.steps)
        .input("cfg", request.cfg)
        .input("sampler", request.sampler_name)
        .input("scheduler", request.scheduler)
        .input("width", request.width)
        .input("height", request.height)
        .input("batch", request.batch_size)
        .input("positive", request.prompt)
        .input("negative", request.negative_prompt)
        .build()
    )


# --- ComfyUI client ---


@dataclass
class ImageReference:
    filename: str
    subfolder: str = ""
    type: str = "output"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageReference":
        return cls(
            filename=data["filename"],
            subfolder=data.get("subfolder") or "",
            type=data.get("type") or "output",
        )

    def url(self, base_url: str) -> str:
        return (
            f"{base_url.rstrip('/')}/view?filename={quote(self.filename)}"
            f"&subfolder={quote(self.subfolder)}&type={quote(self.type)}"
        )


@dataclass
class GenerationProgress:
    node_id: Optional[str]
    value: int
    max: int


@dataclass
class GenerationResult:
    prompt_id: Optional[str] = None
    images: List[ImageReference] = field(default_factory=list)
    info: Optional[str] = None


ProgressHandler = Callable[[GenerationProgress], Any]
FinishedHandler = Callable[[GenerationResult], Any]
FailedHandler = Callable[[Exception], Any]


def _first_text(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, str) else None


class GenerationCall:
    """One execution of a workflow graph on ComfyUI.

    Observers registered with on_progress/on_finished/on_failed are notified
    as WebSocket events arrive. The outcome settles exactly once: a finished
    event without images is turned into a failure, and anything arriving
    after the outcome is settled is ignored.
    """

    def __init__(self, client: "ComfyUIClient", graph: WorkflowGraph):
        self.client = client
        self.graph = graph
        self.prompt_id: Optional[str] = None
        self._outputs: Dict[str, Any] = {}
        self._outcome: Optional[asyncio.Future] = None
        self._started = False
        self._progress_handlers: List[ProgressHandler] = []
        self._finished_handlers: List[FinishedHandler] = []
        self._failed_handlers: List[FailedHandler] = []

    def on_progress(self, handler: ProgressHandler) -> "GenerationCall":
        self._progress_handlers.append(handler)
        return self

    def on_finished(self, handler: FinishedHandler) -> "GenerationCall":
        self._finished_handlers.append(handler)
        return self

    def on_failed(self, handler: FailedHandler) -> "GenerationCall":
        self._failed_handlers.append(handler)
        return self

    @property
    def settled(self) -> bool:
        return self._outcome is not None and self._outcome.done()

    def _ensure_outcome(self) -> asyncio.Future:
        if self._outcome is None:
            self._outcome = asyncio.get_running_loop().create_future()
        return self._outcome

    async def wait(self) -> GenerationResult:
        return await self._ensure_outcome()

    async def run(self) -> GenerationResult:
        if self._started:
            raise RuntimeError("A GenerationCall can only be run once")
        self._started = True
        self._ensure_outcome()

        client_id = str(uuid.uuid4())
        try:
            async with aiohttp.ClientSession(
                headers=self.client.headers,
                timeout=aiohttp.ClientTimeout(total=None),
            ) as session:
                async with session.ws_connect(
                    f"{self.client.ws_url}?clientId={client_id}"
                ) as ws:
                    self.prompt_id = await self.client.queue_prompt(
                        session, self.graph, client_id
                    )
                    await self._listen(session, ws)
        except GenerationFailed as e:
            await self._fail(e)
        except Exception as e:
            await self._fail(GenerationFailed(f"ComfyUI request failed: {e}"))

        if not self.settled:
            await self._fail(
                GenerationFailed("WebSocket connection closed before job completion.")
            )
        return await self.wait()

    async def _listen(self, session: aiohttp.ClientSession, ws: Any) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.BINARY:
                # latent previews
                continue
            if msg.type != aiohttp.WSMsgType.TEXT:
                break
            try:
                message = json.loads(msg.data)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON ComfyUI message: {msg.data!r}")
                continue

            msg_type, data = message.get("type"), message.get("data") or {}
            prompt_id = data.get("prompt_id")

            if msg_type == "progress":
                # older ComfyUI builds omit prompt_id on progress messages
                if prompt_id in (None, self.prompt_id):
                    node = data.get("node")
                    await self._progress(
                        GenerationProgress(
                            node_id=str(node) if node is not None else None,
                            value=int(data.get("value", 0)),
                            max=int(data.get("max", 0)),
                        )
                    )
                continue

            if prompt_id != self.prompt_id:
                continue

            if msg_type == "executed":
                if str(data.get("node")) == self.graph.output_node_id:
                    self._outputs = data.get("output") or {}
            elif msg_type == "execution_error":
                node_id = data.get("node_id")
                raise GenerationFailed(
                    f"ComfyUI job failed on node {node_id}: "
                    f"{data.get('exception_message', 'Unknown error')}",
                    node_id=node_id,
                )
            elif msg_type == "execution_interrupted":
                raise GenerationFailed(
                    "ComfyUI job was interrupted", node_id=data.get("node_id")
                )
            elif msg_type == "execution_success" or (
                msg_type == "executing" and data.get("node") is None
            ):
                await self._finish(await self._collect_result(session))
                return

    async def _collect_result(self, session: aiohttp.ClientSession) -> GenerationResult:
        images = self._outputs.get("images") or []
        info = _first_text(self._outputs.get("info"))

        if not images:
            # a cached output node does not send "executed"
            history = await self.client.get_history(session, self.prompt_id)
            outputs = (
                history.get(self.prompt_id, {})
                .get("outputs", {})
                .get(self.graph.output_node_id, {})
            )
            images = outputs.get("images") or []
            info = info or _first_text(outputs.get("info"))

        return GenerationResult(
            prompt_id=self.prompt_id,
            images=[
                ImageReference.from_dict(image)
                for image in images
                if isinstance(image, dict) and image.get("filename")
            ],
            info=info,
        )

    async def _progress(self, progress: GenerationProgress) -> None:
        logger.debug(
            f"Image generating... node {progress.node_id} {progress.value}/{progress.max}"
        )
        await self._notify(self._progress_handlers, progress)

    async def _finish(self, result: GenerationResult) -> None:
        if self.settled:
            logger.warning(f"Ignoring late finish for prompt {self.prompt_id}")
            return
        if not result.images:
            await self._fail(GenerationFailed("No images found in ComfyUI output"))
            return
        self._ensure_outcome().set_result(result)
        await self._notify(self._finished_handlers, result)

    async def _fail(self, error: Exception) -> None:
        if self.settled:
            logger.warning(f"Ignoring late failure for prompt {self.prompt_id}: {error}")
            return
        logger.error(f"Failed to generate image: {error}")
        self._ensure_outcome().set_exception(error)
        await self._notify(self._failed_handlers, error)

    async def _notify(self, handlers: List[Callable[..., Any]], *args: Any) -> None:
        for handler in handlers:
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("ComfyUI event handler raised")


class ComfyUIClient:
    def __init__(self, base_url: str, api_key: str = ""):
        self.base_url = base_url.rstrip("/")
        self.headers: Dict[str, str] = {}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    @property
    def ws_url(self) -> str:
        ws_base = self.base_url.replace("http://", "ws://").replace(
            "https://", "wss://"
        )
        return f"{ws_base}/ws"

    def get_path_image(self, image: ImageReference) -> str:
        return image.url(self.base_url)

    async def queue_prompt(
        self, session: aiohttp.ClientSession, graph: WorkflowGraph, client_id: str
    ) -> str:
        payload = {"prompt": graph.nodes, "client_id": client_id}
        async with session.post(f"{self.base_url}/prompt", json=payload) as response:
            if response.status != 200:
                text = await response.text()
                raise GenerationFailed(
                    f"Failed to submit job to ComfyUI: {response.status} {text}"
                )
            data = await response.json()

        prompt_id = data.get("prompt_id")
        if not prompt_id:
            raise GenerationFailed("No prompt_id returned from ComfyUI")
        logger.info(f"Queued ComfyUI prompt {prompt_id}")
        return prompt_id

    async def get_history(
        self, session: aiohttp.ClientSession, prompt_id: Optional[str]
    ) -> Dict[str, Any]:
        async with session.get(f"{self.base_url}/history/{prompt_id}") as response:
            if response.status != 200:
                raise GenerationFailed(
                    f"Failed to read ComfyUI history for {prompt_id}: {response.status}"
                )
            return await response.json()

    async def execute(
        self, graph: WorkflowGraph, on_progress: Optional[ProgressHandler] = None
    ) -> GenerationResult:
        call = GenerationCall(self, graph)
        if on_progress:
            call.on_progress(on_progress)
        return await call.run()

    async def fetch(self, image: ImageReference) -> "FetchedImage":
        return await fetch_image(self.get_path_image(image), self.headers)


# --- Image fetcher ---


@dataclass
class FetchedImage:
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


async def fetch_image(
    url: str, headers: Optional[Dict[str, str]] = None
) -> FetchedImage:
    """Download an output image from ComfyUI"""
    async with aiohttp.ClientSession(headers=headers) as session:
        async with session.get(url) as response:
            if response.status != 200:
                raise FetchFailed(
                    f"Failed to fetch ComfyUI image: {response.status} {response.reason}",
                    status=response.status,
                )
            content = await response.read()
            content_type = response.headers.get("Content-Type", "")

    mime_type = content_type.split(";", 1)[0].strip() or DEFAULT_MIME_TYPE
    logger.info(f"Fetched ComfyUI image: {len(content)} bytes ({mime_type})")
    return FetchedImage(data=content, mime_type=mime_type)


# --- Generation info ---


def build_infotext(request: GenerationRequest) -> str:
    return (
        f"{request.prompt}\n"
        f"Negative prompt: {request.negative_prompt}\n"
        f"Steps: {request.steps}, Sampler: {request.sampler_name}, "
        f"Schedule type: {request.scheduler}, CFG scale: {request.cfg}, "
        f"Seed: {request.seed}, Size: {request.width}x{request.height}, "
        f"Model: {os.path.splitext(request.checkpoint)[0]}"
    )


def parse_generation_info(raw: str) -> Dict[str, Any]:
    try:
        info = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MetadataParseFailed(f"Malformed generation info: {e}") from e
    if not isinstance(info, dict):
        raise MetadataParseFailed("Generation info is not a JSON object")
    return info


def generation_info(
    request: GenerationRequest, raw: Optional[str] = None
) -> Dict[str, Any]:
    """Merge the request parameters with any info ComfyUI attached to the output.

    The result always carries a non-empty "infotexts" list whose first entry is
    suitable for a PNG "parameters" text chunk.
    """
    parsed: Dict[str, Any] = {}
    if raw:
        try:
            parsed = parse_generation_info(raw)
        except MetadataParseFailed as e:
            logger.warning(f"Error while getting image metadata: {e}")
    else:
        logger.debug("No generation info attached to the ComfyUI output")

    info = {**request.model_dump(), **parsed}
    infotexts = info.get("infotexts")
    if not (isinstance(infotexts, list) and infotexts and isinstance(infotexts[0], str)):
        info["infotexts"] = [build_infotext(request)]
    return info


def last_info_line(info: Dict[str, Any]) -> Optional[str]:
    infotexts = info.get("infotexts") or []
    if not infotexts or not infotexts[0]:
        return None
    return infotexts[0].strip().split("\n")[-1]


# --- Result materializer ---


class MaterializeMode(Enum):
    AGENT = "agent"
    METADATA = "metadata"
    MARKDOWN = "markdown"


@dataclass
class PlainMarkdown:
    text: Optional[str]


@dataclass
class AgentContentBlocks:
    text: List[Dict[str, Any]]
    image_block: Dict[str, Any]


@dataclass
class FileRecord:
    file: Dict[str, Any]
    prompt: str
    metadata: Dict[str, Any]

    def as_dict(self) -> Dict[str, Any]:
        return {**self.file, "prompt": self.prompt, "metadata": self.metadata}


@dataclass
class ErrorText:
    text: str = API_ERROR_MESSAGE


ResponsePayload = Union[PlainMarkdown, AgentContentBlocks, FileRecord, ErrorText]

UploadImageBuffer = Callable[..., Any]


def upload_image_to_openwebui(
    *,
    request: Request,
    context: str,
    resize: bool = False,
    metadata: Dict[str, Any],
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Store a generated image through Open WebUI's file router"""
    # the file router stores bytes as given; resize is accepted for callers that pass it
    from open_webui.models.users import Users  # type: ignore
    from open_webui.routers.files import upload_file_handler  # type: ignore

    user = Users.get_user_by_id(user_id) if user_id else None
    file = UploadFile(file=io.BytesIO(metadata["buffer"]), filename=metadata["filename"])
    file_item = upload_file_handler(
        request=request,
        file=file,
        metadata={"context": context, "file_id": metadata["file_id"]},
        process=False,
        user=user,
    )
    file_id = getattr(file_item, "id", None)
    if not file_id:
        raise PersistenceFailed("Failed to save image to OpenWebUI")

    return {
        "file_id": str(file_id),
        "filename": metadata["filename"],
        "filepath": f"/api/v1/files/{file_id}/content",
        "width": metadata["width"],
        "height": metadata["height"],
        "bytes": metadata["bytes"],
        "type": metadata["type"],
        "context": context,
    }


class ImageMaterializer:
    def __init__(
        self,
        output_path: str,
        client_path: str,
        user_id: Optional[str] = None,
        upload_image_buffer: Optional[UploadImageBuffer] = None,
        request: Optional[Any] = None,
    ):
        self.output_path = output_path
        self.client_path = client_path
        self.user_id = user_id or ""
        self.upload_image_buffer = upload_image_buffer
        self.request = request

    @property
    def user_dir(self) -> str:
        return os.path.join(self.output_path, self.user_id)

    def markdown_image_url(self, image_name: str) -> str:
        relative_path = os.path.relpath(self.output_path, self.client_path)
        image_url = (
            os.path.join(relative_path, self.user_id, image_name)
            .replace("\\", "/")
            .replace("public/", "", 1)
        )
        return f"![generated image](/{image_url})"

    async def materialize(
        self,
        image: FetchedImage,
        request: GenerationRequest,
        mode: MaterializeMode,
        raw_info: Optional[str] = None,
    ) -> ResponsePayload:
        if mode is MaterializeMode.AGENT:
            return AgentContentBlocks(
                text=[{"type": "text", "text": DISPLAY_MESSAGE}],
                image_block={"type": "image_url", "image_url": {"url": image.data_uri}},
            )

        info = generation_info(request, raw_info)
        file_id = str(uuid.uuid4())
        image_name = f"{file_id}.png"

        try:
            if mode is MaterializeMode.METADATA:
                return await self._upload(image, request, info, file_id, image_name)
            self._write_png(image, info, image_name)
            return PlainMarkdown(self.markdown_image_url(image_name))
        except PersistenceFailed as e:
            logger.error(f"Error while saving the image: {e}", exc_info=True)
        return PlainMarkdown(None)

    async def _upload(
        self,
        image: FetchedImage,
        request: GenerationRequest,
        info: Dict[str, Any],
        file_id: str,
        image_name: str,
    ) -> FileRecord:
        if self.upload_image_buffer is None:
            raise PersistenceFailed("No upload handler configured")
        try:
            with Image.open(io.BytesIO(image.data)) as img:
                width, height = img.size
            stored = self.upload_image_buffer(
                request=self.request,
                context="image_generation",
                resize=False,
                metadata={
                    "buffer": image.data,
                    "width": width,
                    "height": height,
                    "bytes": len(image.data),
                    "filename": image_name,
                    "type": image.mime_type,
                    "file_id": file_id,
                },
            )
            if inspect.isawaitable(stored):
                stored = await stored
        except PersistenceFailed:
            raise
        except Exception as e:
            raise PersistenceFailed(f"Upload of {image_name} failed: {e}") from e

        return FileRecord(
            file=dict(stored or {}),
            prompt=request.prompt,
            metadata={
                "negative_prompt": request.negative_prompt,
                "seed": info.get("seed"),
                "info": last_info_line(info),
            },
        )

    def _write_png(
        self, image: FetchedImage, info: Dict[str, Any], image_name: str
    ) -> str:
        filepath = os.path.join(self.user_dir, image_name)
        try:
            # concurrent calls for the same user may race here; exist_ok makes it harmless
            os.makedirs(self.user_dir, exist_ok=True)
            pnginfo = PngInfo()
            pnginfo.add_text("parameters", info["infotexts"][0])
            with Image.open(io.BytesIO(image.data)) as img:
                img.save(filepath, format="PNG", pnginfo=pnginfo)
        except Exception as e:
            raise PersistenceFailed(f"Could not write {filepath}: {e}") from e
        return filepath


# --- Tool facade ---


def resolve_server_url(explicit: Optional[str] = None, override: bool = False) -> str:
    url = explicit or os.getenv("COMFYUI_URL", "")
    if not url and not override:
        raise MissingConfiguration("Missing COMFYUI_URL environment variable.")
    return url


async def emit_status(
    event_emitter: Optional[Callable[[Any], Awaitable[None]]],
    description: str,
    done: bool = False,
) -> None:
    if not event_emitter:
        return
    await event_emitter(
        {"type": "status", "data": {"description": description, "done": done}}
    )


def build_request(valves: Any, data: Dict[str, Any]) -> GenerationRequest:
    fields: Dict[str, Any] = {}
    if data.get("seed") is not None:
        fields["seed"] = data["seed"]
    return GenerationRequest(
        prompt=data["prompt"],
        negative_prompt=data.get("negative_prompt") or "",
        width=data.get("width") or valves.default_width,
        height=data.get("height") or valves.default_height,
        steps=valves.steps,
        cfg=valves.cfg,
        sampler_name=valves.sampler_name,
        scheduler=valves.scheduler,
        checkpoint=valves.checkpoint_name,
        batch_size=valves.batch_size,
        **fields,
    )


def select_mode(
    is_agent: bool, return_metadata: bool, uploader: Any, request: Any
) -> MaterializeMode:
    if is_agent:
        return MaterializeMode.AGENT
    if return_metadata and uploader and request is not None:
        return MaterializeMode.METADATA
    return MaterializeMode.MARKDOWN


def return_value(payload: ResponsePayload, is_agent: bool) -> Any:
    """Shape a payload for the caller: (text, artifact) pairs for agents, the bare value otherwise"""
    if isinstance(payload, AgentContentBlocks):
        return (payload.text, {"content": [payload.image_block]})
    if isinstance(payload, FileRecord):
        record = payload.as_dict()
        return (DISPLAY_MESSAGE, record) if is_agent else record
    if is_agent and isinstance(payload.text, str):
        return (payload.text, {})
    return payload.text


async def run_generation(
    tools: "Tools",
    data: Dict[str, Any],
    event_emitter: Optional[Callable[[Any], Awaitable[None]]] = None,
    user: Optional[Dict[str, Any]] = None,
    request: Optional[Any] = None,
) -> Any:
    # valves may have been replaced after construction
    server_url = resolve_server_url(tools.valves.comfyui_api_url)
    user_id = tools.user_id or (user or {}).get("id")
    request = request if request is not None else tools.request
    uploader = tools.upload_image_buffer or partial(
        upload_image_to_openwebui, user_id=user_id
    )

    gen_request = build_request(tools.valves, data)
    graph = prepare_workflow(tools.template, gen_request)
    client = ComfyUIClient(server_url, tools.valves.comfyui_api_key)

    async def report_progress(progress: GenerationProgress) -> None:
        await emit_status(
            event_emitter, f"Generating image... ({progress.value}/{progress.max})"
        )

    await emit_status(event_emitter, "Generating image...")
    try:
        result = await client.execute(
            graph, on_progress=report_progress if event_emitter else None
        )
        image = await client.fetch(result.images[0])
    except Exception as e:
        logger.error(f"[ComfyUI] Error while generating image: {e}")
        await emit_status(event_emitter, f"Error: {e}", done=True)
        return return_value(ErrorText(), tools.is_agent)

    materializer = ImageMaterializer(
        output_path=tools.valves.image_output_path,
        client_path=tools.valves.client_path,
        user_id=user_id,
        upload_image_buffer=uploader,
        request=request,
    )
    mode = select_mode(tools.is_agent, tools.return_metadata, uploader, request)
    payload = await materializer.materialize(
        image, gen_request, mode, raw_info=result.info
    )
    await emit_status(event_emitter, "Image generation complete!", done=True)
    return return_value(payload, tools.is_agent)


class Tools:
    class Valves(BaseModel):
        comfyui_api_url: str = Field(
            default_factory=lambda: os.getenv("COMFYUI_URL", ""),
            description="ComfyUI HTTP API endpoint. Defaults to the COMFYUI_URL environment variable.",
        )
        comfyui_api_key: str = Field(
            default="",
            description="API key for ComfyUI authentication (Bearer token). Leave empty if not required.",
            json_schema_extra={"input": {"type": "password"}},
        )
        checkpoint_name: str = Field(
            default=DEFAULT_CHECKPOINT,
            description="Stable Diffusion checkpoint loaded by the workflow.",
        )
        steps: int = Field(default=6, description="Sampler steps.")
        cfg: float = Field(default=1.0, description="Classifier-free guidance scale.")
        sampler_name: str = Field(default="euler", description="KSampler sampler name.")
        scheduler: str = Field(default="normal", description="KSampler scheduler.")
        batch_size: int = Field(default=1, description="Images generated per run.")
        default_width: int = Field(default=512, description="Width when the caller gives none.")
        default_height: int = Field(default=512, description="Height when the caller gives none.")
        image_output_path: str = Field(
            default=os.path.join("client", "public", "images"),
            description="Directory holding per-user generated images.",
        )
        client_path: str = Field(
            default="client",
            description="Web client root; image links are made relative to it.",
        )

    def __init__(
        self,
        user_id: Optional[str] = None,
        comfyui_url: Optional[str] = None,
        override: bool = False,
        return_metadata: bool = False,
        is_agent: bool = False,
        upload_image_buffer: Optional[UploadImageBuffer] = None,
        request: Optional[Any] = None,
    ):
        self.valves = self.Valves()
        self.valves.comfyui_api_url = resolve_server_url(
            comfyui_url or self.valves.comfyui_api_url, override
        )
        self.user_id = user_id
        self.return_metadata = return_metadata
        self.is_agent = is_agent
        self.upload_image_buffer = upload_image_buffer
        self.request = request
        self.template = SD15_T2I_TEMPLATE

    async def generate_image(
        self,
        prompt: str,
        negative_prompt: str,
        __event_emitter__: Optional[Callable[[Any], Awaitable[None]]] = None,
        __user__: Optional[Dict[str, Any]] = None,
        __request__: Optional[Any] = None,
    ) -> Any:
        """
        Generate images and visuals from text with Stable Diffusion. This tool is exclusively for visual content.

        GUIDELINES:
        - Always provide both a prompt and a negative prompt, each with at least 7 detailed keywords separated by commas.
        - Always include the returned markdown image link in your final response: ![caption](/images/id.png)
        - Visually describe moods, details, structures, styles and proportions. Focus on visual attributes.
        - Show, don't tell: think of what you would want to see in a photograph or a painting.
        - Generate images only once per user request unless explicitly asked otherwise.

        EXAMPLE (realistic portrait photo of a man):
        prompt: "photo of a man in black clothes, half body, high detailed skin, coastline, overcast weather, wind, waves, 8k uhd, dslr, soft lighting, high quality, film grain, Fujifilm XT3"
        negative_prompt: "semi-realistic, cgi, 3d, render, sketch, cartoon, drawing, anime, out of frame, low quality, ugly, mutation, deformed"

        :param prompt: Detailed keywords describing the subject, at least 7, separated by commas
        :param negative_prompt: Keywords to exclude from the image, at least 7, separated by commas
        :return: A markdown image link, a stored file record, or content blocks when called by an agent
        """
        return await run_generation(
            self,
            {"prompt": prompt, "negative_prompt": negative_prompt},
            event_emitter=__event_emitter__,
            user=__user__,
            request=__request__,
        )
