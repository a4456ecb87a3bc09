"""Constants used throughout the StoryFlow runner."""

# Generation defaults
DEFAULT_WIDTH = 1024
DEFAULT_HEIGHT = 1024
DEFAULT_STEPS = 8
DEFAULT_GUIDANCE_SCALE = 1.0
DEFAULT_SEED = -1  # -1 asks the backend for a random seed
DEFAULT_SEED_MODE = "Scale Alike"
DEFAULT_SAMPLER = "UniPC Trailing"
DEFAULT_SHIFT = 3.0
DEFAULT_STRENGTH = 1.0

# File paths
IMAGE_SAVE_EXTENSIONS = (".png",)
IMAGE_LOAD_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")
METADATA_SIDECAR_SUFFIX = ".json"

# Draw Things HTTP
DRAWTHINGS_DEFAULT_HOST = "127.0.0.1"
DRAWTHINGS_HTTP_DEFAULT_PORT = 7860
DRAWTHINGS_CONNECT_TIMEOUT = 5
DRAWTHINGS_GENERATE_TIMEOUT = 300

# ComfyUI
COMFYUI_DEFAULT_HOST = "localhost"
COMFYUI_DEFAULT_PORT = 8188
COMFYUI_TIMEOUT = 30
COMFYUI_DOWNLOAD_TIMEOUT = 60
COMFYUI_WAIT_TIMEOUT = 300

# Settings / logging
SETTINGS_FILENAME = "storyflow.yaml"
LOG_FILENAME = "storyflow.log"

# Skip reasons for instructions that need the app's own canvas
SKIP_CANVAS = "Canvas manipulation requires Draw Things internal state"
SKIP_MOODBOARD = "Moodboard operations require Draw Things internal state"
SKIP_MASK = "Mask operations require Draw Things internal state"
SKIP_DEPTH_POSE = "Depth/pose operations require Draw Things internal state"
SKIP_AI_TOOLS = "AI features require Draw Things internal state"
