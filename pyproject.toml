[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "camkit"
version = "1.10.0"
description = "Video encoders, stream outputs and still-image writers for camera capture pipelines"
requires-python = ">=3.10"
keywords = ["camera", "video", "encoder", "mjpeg", "dng", "jpeg", "exif", "bmp", "png", "yuv", "circular buffer"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video :: Capture",
    "Topic :: Multimedia :: Graphics :: Graphics Conversion",
]
dependencies = [
    "numpy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["camkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 120
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
