[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "k8sai"
version = "0.0.5"
description = "A Kubernetes controller that hands plain-English Task prompts to a chat model and sends the API call it proposes"
requires-python = ">=3.10"
keywords = ["kubernetes", "controller", "operator", "llm", "openai", "automation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Typing :: Typed",
]
dependencies = [
    "httpx>=0.24",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "respx>=0.20",
]

[project.scripts]
k8sai = "k8sai.main:main"

[tool.hatch.build.targets.wheel]
packages = ["k8sai"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
