"""
Setup configuration for FrameFit
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="framefit",
    version="1.0.0",
    author="Mihretab N. Afework",
    author_email="mtabdevt@gmail.com",
    description="Canonical-frame packing and tiled super-resolution for fixed-size image editing services",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Multimedia :: Graphics",
    ],
    python_requires=">=3.9",
    install_requires=[
        "opencv-python>=4.10.0",
        "numpy>=2.1.3",
        "Pillow>=11.0.0",
        "python-dotenv>=1.0.1",
        "fastapi>=0.115.0",
        "uvicorn>=0.32.0",
        "python-multipart>=0.0.12",
    ],
    extras_require={
        "dev": [
            "pytest>=8.3.3",
            "pytest-cov>=6.0.0",
            "httpx>=0.27.0",
            "black>=24.10.0",
            "flake8>=7.1.1",
            "mypy>=1.13.0",
        ],
        "ml": [
            "tensorflow>=2.18.0",
            "torch>=2.5.1",
            "realesrgan>=0.3.0",
            "basicsr>=1.4.2",
        ],
    },
)
