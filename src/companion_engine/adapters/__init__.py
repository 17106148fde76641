from .gradio_images import GradioImageService, parse_sse_image_url

__all__ = ["GradioImageService", "parse_sse_image_url"]
