#!/usr/bin/env python3
"""
Draw Things HTTP Client

Request/response transport for the Draw Things (A1111-compatible) HTTP API.
"""

import logging
from typing import Dict, List, Optional

import requests
from PIL import Image

from storyflow.constants import (
    DRAWTHINGS_CONNECT_TIMEOUT,
    DRAWTHINGS_DEFAULT_HOST,
    DRAWTHINGS_GENERATE_TIMEOUT,
    DRAWTHINGS_HTTP_DEFAULT_PORT,
)
from storyflow.errors import GenerationCancelled, ProviderError
from storyflow.io.image_codec import image_from_base64, image_to_base64
from storyflow.services.provider import GenerationProgress, GenerationProvider, GenerationRequest


class DrawThingsHTTPClient(GenerationProvider):
    """Client for the Draw Things HTTP API (default port 7860)."""

    def __init__(
        self,
        host: str = DRAWTHINGS_DEFAULT_HOST,
        port: int = DRAWTHINGS_HTTP_DEFAULT_PORT,
        shared_secret: str = "",
        timeout: int = DRAWTHINGS_GENERATE_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ):
        self.host = host
        self.port = port
        self.shared_secret = shared_secret
        self.timeout = timeout
        self.base_url = f"http://{host}:{port}"
        self.logger = logger or logging.getLogger(__name__)

    @property
    def transport(self) -> str:
        return "http"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.shared_secret:
            headers["Authorization"] = f"Bearer {self.shared_secret}"
        return headers

    def check_connection(self) -> bool:
        """Test if Draw Things is accessible."""
        try:
            response = requests.get(
                f"{self.base_url}/sdapi/v1/options",
                headers=self._headers(),
                timeout=DRAWTHINGS_CONNECT_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Failed to connect to Draw Things: {e}")
            return False
        if response.status_code == 200:
            self.logger.info(f"Connected to Draw Things HTTP API at {self.host}:{self.port}")
            return True
        return False

    def generate(self, request: GenerationRequest) -> List[Image.Image]:
        """Generate images; img2img endpoint when a source image is supplied."""
        if request.cancelled:
            raise GenerationCancelled()
        request.report(GenerationProgress.starting())

        is_img2img = request.source_image is not None
        endpoint = "sdapi/v1/img2img" if is_img2img else "sdapi/v1/txt2img"
        body = request.config.to_request_body(request.prompt, request.negative_prompt)

        if request.source_image is not None:
            body["init_images"] = [image_to_base64(request.source_image)]
            # A1111-compatible API uses denoising_strength for img2img
            body["denoising_strength"] = request.config.strength
        if request.mask is not None:
            body["mask"] = image_to_base64(request.mask)

        self.logger.debug(
            f"Sending {'img2img' if is_img2img else 'txt2img'} request: prompt={request.prompt[:50]}..."
        )
        request.report(GenerationProgress.sampling(0, request.config.steps))

        try:
            response = requests.post(
                f"{self.base_url}/{endpoint}",
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ProviderError(f"Request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Connection failed: {e}") from e

        if response.status_code != 200:
            message = response.text or "Unknown error"
            self.logger.error(f"Generation failed with status {response.status_code}: {message}")
            raise ProviderError(f"Request failed ({response.status_code}): {message}", response.status_code)

        if request.cancelled:
            raise GenerationCancelled()

        request.report(GenerationProgress.decoding())
        images = self._decode_image_response(response)
        request.report(GenerationProgress.complete())

        self.logger.info(f"Generated {len(images)} image(s) via {'img2img' if is_img2img else 'txt2img'}")
        return images

    def fetch_models(self) -> List[str]:
        """Return model filenames known to Draw Things."""
        try:
            response = requests.get(
                f"{self.base_url}/sdapi/v1/sd-models",
                headers=self._headers(),
                timeout=10,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderError(f"Failed to fetch models: {e}") from e

        # Could be an array of objects, an array of names, or an object with a list inside
        models: List[str] = []
        if isinstance(data, dict):
            data = data.get("models") or data.get("data") or []
        if isinstance(data, list):
            for item in data:
                if isinstance(item, str):
                    models.append(item)
                elif isinstance(item, dict):
                    name = item.get("model_name") or item.get("title") or item.get("name")
                    if name:
                        models.append(str(name))
        self.logger.info(f"Fetched {len(models)} models from Draw Things")
        return models

    @staticmethod
    def _decode_image_response(response) -> List[Image.Image]:
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError("Invalid response from Draw Things") from e
        if not isinstance(payload, dict):
            raise ProviderError("Invalid response from Draw Things")

        encoded = payload.get("images")
        if encoded is None:
            # Some Draw Things versions return a single image
            single = payload.get("image")
            if isinstance(single, str):
                return [image_from_base64(single)]
            raise ProviderError("Invalid response from Draw Things")
        if not isinstance(encoded, list):
            raise ProviderError("Invalid response from Draw Things")
        return [image_from_base64(item) for item in encoded if isinstance(item, str)]
