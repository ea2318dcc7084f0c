# Services module
# Import services directly where needed to avoid circular imports
#
# Example:
#   from llama_supervisor.services.download_service import ArtifactDownloader

from .vram_service import VRAMService, ResourceBudget
from .metrics_service import MetricsService
