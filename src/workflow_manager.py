#!/usr/bin/env python3
"""
Workflow Manager

Loads ComfyUI API graph templates and fills them with a StoryFlow generation
request (prompts, sampler settings, source image and mask).
"""

import json
import random
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple

from PIL import Image

from storyflow.model.generation_config import GenerationConfig

# Draw Things sampler names -> (ComfyUI sampler_name, scheduler)
SAMPLER_MAP: Dict[str, Tuple[str, str]] = {
    "unipc trailing": ("uni_pc", "sgm_uniform"),
    "unipc": ("uni_pc", "normal"),
    "euler a": ("euler_ancestral", "normal"),
    "euler a trailing": ("euler_ancestral", "sgm_uniform"),
    "dpm++ 2m karras": ("dpmpp_2m", "karras"),
    "dpm++ 2m trailing": ("dpmpp_2m", "sgm_uniform"),
    "dpm++ sde karras": ("dpmpp_sde", "karras"),
    "ddim": ("ddim", "normal"),
    "ddim trailing": ("ddim", "sgm_uniform"),
    "lcm": ("lcm", "normal"),
}


def map_sampler(name: str) -> Tuple[str, str]:
    key = (name or "").strip().lower()
    if key in SAMPLER_MAP:
        return SAMPLER_MAP[key]
    return key.replace(" ", "_").replace("+", "p") or "euler", "normal"


def _is_link(v) -> bool:
    # ComfyUI JSON links are usually like ["9", 0]
    return isinstance(v, list) and len(v) == 2 and isinstance(v[0], (str, int)) and isinstance(v[1], int)


def _nodes_of_type(graph: Dict, class_type: str) -> Iterable[Tuple[str, Dict]]:
    for node_id, node in graph.items():
        if isinstance(node, dict) and node.get("class_type") == class_type:
            yield str(node_id), node


def _text_encoders_upstream(graph: Dict, start_id: str, max_depth: int = 6) -> Set[str]:
    """Walk upstream through conditioning nodes to find CLIPTextEncode nodes."""
    found: Set[str] = set()
    seen: Set[str] = set()
    stack = [(str(start_id), 0)]
    while stack:
        nid, depth = stack.pop()
        if nid in seen or depth > max_depth:
            continue
        seen.add(nid)
        node = graph.get(nid)
        if not isinstance(node, dict):
            continue
        if node.get("class_type") == "CLIPTextEncode":
            found.add(nid)
            continue
        inputs = node.get("inputs") or {}
        for key in ("positive", "negative", "conditioning", "cond", "prompt"):
            link = inputs.get(key)
            if _is_link(link):
                stack.append((str(link[0]), depth + 1))
    return found


class WorkflowManager:
    """Builds ComfyUI prompt graphs for generation requests."""

    @staticmethod
    def load_graph(graph_path: str) -> Dict:
        """Load an API graph from JSON, or from a ComfyUI-exported PNG's metadata."""
        graph_file = Path(graph_path)
        if not graph_file.exists():
            raise FileNotFoundError(f"Workflow template not found: {graph_path}")

        suffix = graph_file.suffix.lower()
        if suffix == ".json":
            with open(graph_file, "r", encoding="utf-8") as f:
                return json.load(f)

        if suffix == ".png":
            with Image.open(graph_file) as im:
                info = dict(getattr(im, "info", {}) or {})
            # ComfyUI stores the API prompt JSON under 'prompt'
            raw = info.get("prompt") or info.get("workflow")
            if not raw:
                raise ValueError(f"Workflow PNG has no embedded prompt metadata: {graph_file}")
            text = raw.decode("utf-8", "ignore") if isinstance(raw, (bytes, bytearray)) else str(raw)
            data = json.loads(text)
            if not isinstance(data, dict) or not data:
                raise ValueError(f"Could not parse embedded workflow metadata from PNG: {graph_file}")
            return data

        raise ValueError(f"Unsupported workflow template type: {graph_file} (expected .json or .png)")

    @staticmethod
    def default_graph(with_image: bool = False, with_mask: bool = False) -> Dict:
        """Minimal txt2img / img2img / inpaint graph for checkpoint models."""
        graph: Dict = {
            "4": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": ""}},
            "6": {"class_type": "CLIPTextEncode", "inputs": {"text": "", "clip": ["4", 1]},
                  "_meta": {"title": "Positive Prompt"}},
            "7": {"class_type": "CLIPTextEncode", "inputs": {"text": "", "clip": ["4", 1]},
                  "_meta": {"title": "Negative Prompt"}},
            "3": {
                "class_type": "KSampler",
                "inputs": {
                    "model": ["4", 0], "positive": ["6", 0], "negative": ["7", 0],
                    "latent_image": ["5", 0], "seed": 0, "steps": 20, "cfg": 7.0,
                    "sampler_name": "euler", "scheduler": "normal", "denoise": 1.0,
                },
            },
            "8": {"class_type": "VAEDecode", "inputs": {"samples": ["3", 0], "vae": ["4", 2]}},
            "9": {"class_type": "SaveImage", "inputs": {"images": ["8", 0], "filename_prefix": "storyflow"}},
        }
        if not with_image:
            graph["5"] = {"class_type": "EmptyLatentImage",
                          "inputs": {"width": 1024, "height": 1024, "batch_size": 1}}
            return graph

        graph["10"] = {"class_type": "LoadImage", "inputs": {"image": ""}}
        if with_mask:
            graph["11"] = {"class_type": "LoadImageMask", "inputs": {"image": "", "channel": "red"}}
            graph["5"] = {"class_type": "VAEEncodeForInpaint",
                          "inputs": {"pixels": ["10", 0], "vae": ["4", 2], "mask": ["11", 0], "grow_mask_by": 6}}
        else:
            graph["5"] = {"class_type": "VAEEncode", "inputs": {"pixels": ["10", 0], "vae": ["4", 2]}}
        return graph

    @staticmethod
    def missing_checkpoint(graph: Dict, config: GenerationConfig) -> bool:
        """True if a checkpoint loader would be left without a model name."""
        if config.model:
            return False
        return any(
            not (node.get("inputs") or {}).get("ckpt_name")
            for _, node in _nodes_of_type(graph, "CheckpointLoaderSimple")
        )

    @staticmethod
    def update_graph(
        graph: Dict,
        prompt: str,
        negative_prompt: str,
        config: GenerationConfig,
        input_image_name: Optional[str] = None,
        mask_image_name: Optional[str] = None,
    ) -> Dict:
        """Return a copy of `graph` filled with the request's values."""
        graph_copy = json.loads(json.dumps(graph))

        if config.model:
            for _, node in _nodes_of_type(graph_copy, "CheckpointLoaderSimple"):
                node.setdefault("inputs", {})["ckpt_name"] = config.model

        sampler_name, scheduler = map_sampler(config.sampler)
        seed = config.seed if config.seed >= 0 else random.randint(1, 2**31 - 1)
        # Strength only applies when there is an image to start from
        denoise = config.strength if input_image_name else 1.0

        pos_targets: Set[str] = set()
        neg_targets: Set[str] = set()
        for _, node in _nodes_of_type(graph_copy, "KSampler"):
            inputs = node.get("inputs")
            if not isinstance(inputs, dict):
                continue
            inputs["seed"] = seed
            inputs["steps"] = config.steps
            inputs["cfg"] = config.guidance_scale
            inputs["sampler_name"] = sampler_name
            inputs["scheduler"] = scheduler
            inputs["denoise"] = denoise
            if _is_link(inputs.get("positive")):
                pos_targets |= _text_encoders_upstream(graph_copy, str(inputs["positive"][0]))
            if _is_link(inputs.get("negative")):
                neg_targets |= _text_encoders_upstream(graph_copy, str(inputs["negative"][0]))

        # Fallback: if the sampler links could not be traced, use _meta title hints
        traced_pos, traced_neg = bool(pos_targets), bool(neg_targets)
        if not traced_pos or not traced_neg:
            for node_id, node in _nodes_of_type(graph_copy, "CLIPTextEncode"):
                title = ((node.get("_meta") or {}).get("title") or "").lower()
                if "negative" in title:
                    if not traced_neg:
                        neg_targets.add(node_id)
                elif not traced_pos:
                    pos_targets.add(node_id)

        for nid in sorted(pos_targets):
            graph_copy[nid].setdefault("inputs", {})["text"] = prompt
        for nid in sorted(neg_targets - pos_targets):
            graph_copy[nid].setdefault("inputs", {})["text"] = negative_prompt

        for _, node in _nodes_of_type(graph_copy, "EmptyLatentImage"):
            inputs = node.setdefault("inputs", {})
            inputs["width"] = config.width
            inputs["height"] = config.height
            inputs["batch_size"] = config.batch_size

        # First LoadImage is the source image; first LoadImageMask is the mask
        if input_image_name:
            for _, node in _nodes_of_type(graph_copy, "LoadImage"):
                node.setdefault("inputs", {})["image"] = input_image_name
                break
        if mask_image_name:
            for _, node in _nodes_of_type(graph_copy, "LoadImageMask"):
                node.setdefault("inputs", {})["image"] = mask_image_name
                break

        return graph_copy
