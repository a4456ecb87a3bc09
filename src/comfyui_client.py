#!/usr/bin/env python3
"""
ComfyUI API Client

Streaming generation transport: uploads canvas/mask images, queues a filled
graph, follows progress over the WebSocket and downloads the results.
"""

import json
import logging
import time
import uuid
from typing import Dict, List, Optional

import requests
import websocket
from PIL import Image

from storyflow.constants import (
    COMFYUI_DEFAULT_HOST,
    COMFYUI_DEFAULT_PORT,
    COMFYUI_DOWNLOAD_TIMEOUT,
    COMFYUI_TIMEOUT,
    COMFYUI_WAIT_TIMEOUT,
)
from storyflow.errors import GenerationCancelled, ProviderError
from storyflow.io.image_codec import image_from_bytes, image_to_png_bytes
from storyflow.services.provider import GenerationProgress, GenerationProvider, GenerationRequest
from workflow_manager import WorkflowManager


class ComfyUIClient(GenerationProvider):
    """Client for interacting with the ComfyUI API."""

    def __init__(
        self,
        host: str = COMFYUI_DEFAULT_HOST,
        port: int = COMFYUI_DEFAULT_PORT,
        workflow_template: Optional[str] = None,
        max_wait: int = COMFYUI_WAIT_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ):
        self.host = host
        self.port = port
        self.client_id = str(uuid.uuid4())
        self.base_url = f"http://{host}:{port}"
        self.ws_url = f"ws://{host}:{port}/ws?clientId={self.client_id}"
        self.workflow_template = workflow_template
        self.max_wait = max_wait
        self.logger = logger or logging.getLogger(__name__)

    @property
    def transport(self) -> str:
        return "comfyui"

    # ------------------------------------------------------------------
    # Raw API
    # ------------------------------------------------------------------
    def queue_prompt(self, graph: Dict) -> str:
        """Queue a prompt graph and return its prompt ID."""
        data = {"prompt": graph, "client_id": self.client_id}
        response = requests.post(f"{self.base_url}/prompt", json=data, timeout=COMFYUI_TIMEOUT)
        response.raise_for_status()
        return response.json()["prompt_id"]

    def get_history(self, prompt_id: str) -> Dict:
        """Get execution history for a prompt ID ({} if not recorded yet)."""
        try:
            response = requests.get(f"{self.base_url}/history/{prompt_id}", timeout=COMFYUI_TIMEOUT)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return {}
            raise
        data = response.json()
        return data if isinstance(data, dict) else {}

    def upload_image(self, image: Image.Image, name: str) -> str:
        """Upload an image to ComfyUI's input folder and return its stored name."""
        files = {"image": (name, image_to_png_bytes(image), "image/png")}
        response = requests.post(
            f"{self.base_url}/upload/image",
            files=files,
            data={"overwrite": "true"},
            timeout=COMFYUI_TIMEOUT,
        )
        response.raise_for_status()
        info = response.json()
        subfolder = info.get("subfolder") or ""
        stored = info.get("name") or name
        return f"{subfolder}/{stored}" if subfolder else stored

    def download_image(self, filename: str, subfolder: str = "", folder_type: str = "output") -> bytes:
        """Download an image from ComfyUI."""
        params = {"filename": filename, "subfolder": subfolder, "type": folder_type}
        response = requests.get(f"{self.base_url}/view", params=params, timeout=COMFYUI_DOWNLOAD_TIMEOUT)
        response.raise_for_status()
        return response.content

    def interrupt(self) -> None:
        try:
            requests.post(f"{self.base_url}/interrupt", timeout=COMFYUI_TIMEOUT)
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"Failed to interrupt ComfyUI: {e}")

    def check_connection(self) -> bool:
        """Test if ComfyUI is accessible."""
        try:
            response = requests.get(f"{self.base_url}/system_stats", timeout=5)
        except requests.exceptions.RequestException:
            return False
        return response.status_code == 200

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def generate(self, request: GenerationRequest) -> List[Image.Image]:
        if request.cancelled:
            raise GenerationCancelled()
        request.report(GenerationProgress.starting())

        template = self._load_template(request)
        if WorkflowManager.missing_checkpoint(template, request.config):
            raise ProviderError(
                "ComfyUI needs a checkpoint: set 'model' in a config instruction or the settings defaults"
            )

        try:
            input_name = mask_name = None
            token = uuid.uuid4().hex[:8]
            if request.source_image is not None:
                input_name = self.upload_image(request.source_image, f"storyflow_canvas_{token}.png")
            if request.mask is not None:
                mask_name = self.upload_image(request.mask, f"storyflow_mask_{token}.png")

            graph = WorkflowManager.update_graph(
                template,
                prompt=request.prompt,
                negative_prompt=request.negative_prompt,
                config=request.config,
                input_image_name=input_name,
                mask_image_name=mask_name,
            )

            prompt_id = self.queue_prompt(graph)
            self.logger.info(f"Queued ComfyUI prompt {prompt_id}")
            if not self.wait_for_completion(prompt_id, request):
                raise ProviderError(f"ComfyUI did not finish prompt {prompt_id} within {self.max_wait}s")

            request.report(GenerationProgress.decoding())
            images = self._collect_outputs(prompt_id)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"ComfyUI request failed: {e}") from e

        if not images:
            raise ProviderError(f"ComfyUI prompt {prompt_id} produced no images")
        request.report(GenerationProgress.complete())
        return images

    def _load_template(self, request: GenerationRequest) -> Dict:
        if not self.workflow_template:
            return WorkflowManager.default_graph(
                with_image=request.source_image is not None,
                with_mask=request.mask is not None,
            )
        try:
            return WorkflowManager.load_graph(self.workflow_template)
        except (FileNotFoundError, ValueError) as e:
            raise ProviderError(f"Invalid ComfyUI workflow template: {e}") from e

    def wait_for_completion(self, prompt_id: str, request: Optional[GenerationRequest] = None) -> bool:
        """Wait for completion over the WebSocket, falling back to history polling.

        Raises GenerationCancelled if the request's cancel event is set.
        """
        start_time = time.time()
        completed = False

        def _check_cancel():
            if request is not None and request.cancelled:
                self.interrupt()
                raise GenerationCancelled()

        try:
            ws = websocket.WebSocket()
            ws.connect(self.ws_url)
            ws.settimeout(1.0)
        except (websocket.WebSocketException, OSError) as e:
            self.logger.debug(f"WebSocket unavailable, polling history instead: {e}")
            ws = None

        if ws is not None:
            try:
                while time.time() - start_time < self.max_wait:
                    _check_cancel()
                    try:
                        message = ws.recv()
                    except websocket.WebSocketTimeoutException:
                        continue
                    if not isinstance(message, str) or not message:
                        continue  # binary preview frames
                    try:
                        data = json.loads(message)
                    except ValueError:
                        self.logger.debug(f"Ignoring malformed WebSocket message: {message[:80]}")
                        continue
                    if not isinstance(data, dict):
                        continue
                    msg_type = data.get("type")
                    payload = data.get("data", {})
                    if msg_type == "progress" and request is not None:
                        request.report(GenerationProgress.sampling(payload.get("value", 0), payload.get("max", 0)))
                    elif msg_type == "executing" and payload.get("prompt_id") == prompt_id:
                        if payload.get("node") is None:
                            completed = True
                            break
                    elif msg_type == "execution_error" and payload.get("prompt_id") == prompt_id:
                        raise ProviderError(payload.get("exception_message") or "ComfyUI execution error")
            except (websocket.WebSocketException, OSError) as e:
                self.logger.debug(f"WebSocket dropped, polling history instead: {e}")
            finally:
                ws.close()

        # Poll history if WebSocket didn't complete
        while not completed and time.time() - start_time < self.max_wait:
            _check_cancel()
            history = self.get_history(prompt_id)
            if history.get(prompt_id, {}).get("outputs"):
                completed = True
                break
            time.sleep(1)

        return completed

    def _collect_outputs(self, prompt_id: str) -> List[Image.Image]:
        history = self.get_history(prompt_id)
        outputs = history.get(prompt_id, {}).get("outputs", {}) or {}
        images: List[Image.Image] = []
        for node_id in sorted(outputs):
            for info in outputs[node_id].get("images", []) or []:
                if info.get("type", "output") != "output":
                    continue
                data = self.download_image(info["filename"], info.get("subfolder", ""), info.get("type", "output"))
                images.append(image_from_bytes(data))
        return images
