"""
FrameFit: canonical-frame packing and tiled super-resolution for image editing
Main package initialization
"""

__version__ = "1.0.0"
__author__ = "Mihretab N. Afework"
__email__ = "mtabdevt@gmail.com"

from framefit.config import Config
from framefit.logger import setup_logger

# Initialize logger
logger = setup_logger(__name__)

__all__ = ["Config", "logger"]
