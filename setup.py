"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="gemish-chat",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.1",
        "google-generativeai>=0.8",
        "google-api-core>=2.11",
        "httpx>=0.27",
        "prometheus-client>=0.19",
        "opentelemetry-instrumentation-fastapi>=0.45b0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
        "server": [
            "uvicorn>=0.27",
        ],
    },
)
