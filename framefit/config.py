"""
Configuration management for FrameFit
"""

import os
from pathlib import Path
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Main configuration class for FrameFit"""

    # Application settings
    APP_NAME = "FrameFit"
    APP_VERSION = "1.0.0"
    DEBUG = os.getenv("DEBUG", "False").lower() == "true"

    # Paths
    BASE_DIR = Path(__file__).parent.parent
    MODELS_DIR = Path(os.getenv("MODELS_DIR", str(BASE_DIR / "models")))
    LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))

    # Create directories if they don't exist
    for directory in [MODELS_DIR, LOGS_DIR]:
        directory.mkdir(parents=True, exist_ok=True)

    # Canonical frame settings (aspect classes accepted by the editing service)
    FRAME_BASE_SHORT_EDGE = int(os.getenv("FRAME_BASE_SHORT_EDGE", "1024"))
    FRAME_BASE_LONG_EDGE = int(os.getenv("FRAME_BASE_LONG_EDGE", "1536"))
    # Square bias window: aspect ratios inside [LOW, HIGH] map to the square base
    FRAME_SQUARE_LOW = float(os.getenv("FRAME_SQUARE_LOW", "0.79"))
    FRAME_SQUARE_HIGH = float(os.getenv("FRAME_SQUARE_HIGH", "1.31"))

    # Super-resolution settings
    UPSCALE_TILE_SIZE = int(os.getenv("UPSCALE_TILE_SIZE", "224"))
    UPSCALE_TILE_OVERLAP = int(os.getenv("UPSCALE_TILE_OVERLAP", "16"))
    UPSCALE_SWIRL_SUPPRESSION = float(os.getenv("UPSCALE_SWIRL_SUPPRESSION", "0.4"))
    UPSCALE_ARTIFACT_DENOISE = (
        os.getenv("UPSCALE_ARTIFACT_DENOISE", "False").lower() == "true"
    )
    UPSCALE_MIN_SCALE_THRESHOLD = float(
        os.getenv("UPSCALE_MIN_SCALE_THRESHOLD", "1.15")
    )
    UPSCALE_MAX_RETRIES = int(os.getenv("UPSCALE_MAX_RETRIES", "2"))
    UPSCALE_FORCE_DETERMINISTIC = (
        os.getenv("UPSCALE_FORCE_DETERMINISTIC", "True").lower() == "true"
    )
    UPSCALE_CPU_THREADS = int(os.getenv("UPSCALE_CPU_THREADS", "4"))
    UPSCALE_PRESCALE_HEADROOM = float(os.getenv("UPSCALE_PRESCALE_HEADROOM", "1.15"))
    UPSCALE_MAX_OUTPUT_MB = int(os.getenv("UPSCALE_MAX_OUTPUT_MB", "120"))
    UPSCALE_ADAPTIVE_MEMORY_GUARD = (
        os.getenv("UPSCALE_ADAPTIVE_MEMORY_GUARD", "True").lower() == "true"
    )
    UPSCALE_INITIAL_TILE_SIZE = int(os.getenv("UPSCALE_INITIAL_TILE_SIZE", "224"))
    UPSCALE_MIN_TILE_SIZE = int(os.getenv("UPSCALE_MIN_TILE_SIZE", "128"))
    UPSCALE_MAX_PASSES = int(os.getenv("UPSCALE_MAX_PASSES", "5"))
    UPSCALE_BACKEND_PRIORITY = os.getenv(
        "UPSCALE_BACKEND_PRIORITY", "tflite,realesrgan_cuda,realesrgan_cpu,opencv"
    )
    UPSCALE_TFLITE_MODEL = os.getenv(
        "UPSCALE_TFLITE_MODEL", "Real-ESRGAN-General-x4v3.tflite"
    )
    UPSCALE_TORCH_MODEL = os.getenv("UPSCALE_TORCH_MODEL", "realesr-general-x4v3")
    UPSCALE_OPENCV_MODEL = os.getenv("UPSCALE_OPENCV_MODEL", "EDSR_x4.pb")
    UPSCALE_HALF_PRECISION = (
        os.getenv("UPSCALE_HALF_PRECISION", "False").lower() == "true"
    )

    # API settings
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Logging settings
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def to_dict(cls) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            key: getattr(cls, key)
            for key in dir(cls)
            if not key.startswith("_") and key.isupper()
        }


class DevelopmentConfig(Config):
    """Development configuration"""

    DEBUG = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration"""

    DEBUG = False
    LOG_LEVEL = "INFO"


class TestingConfig(Config):
    """Testing configuration"""

    DEBUG = True
    LOG_LEVEL = "WARNING"
    UPSCALE_FORCE_DETERMINISTIC = True


def get_config() -> Config:
    """Get appropriate configuration based on environment"""
    env = os.getenv("ENVIRONMENT", "development").lower()

    config_map = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig,
    }

    return config_map.get(env, DevelopmentConfig)
