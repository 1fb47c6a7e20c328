EXTRACT_FRAMES_PATH = "/extract-frames"

USAGE_HINT = "Use /extract-frames endpoint with a video URL parameter"

FRAME_FIELD_NAME = "frame"

FRAME_CONTENT_TYPE = "image/png"

SUPPORTED_REQUEST_HEADERS = [
    "accept-language",
    "user-agent",
    "referer",
    "origin",
    "cookie",
    "authorization",
]
