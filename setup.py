"""Setup script for the Harness orchestrator package."""

from setuptools import setup, find_packages

setup(
    name="harness-orchestrator",
    version="0.1.0",
    packages=find_packages(include=["harness", "harness.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.29",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "redis>=5.0",
        "httpx>=0.27",
        "prometheus-client>=0.20",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="Harness - multi-agent run orchestrator with approval gates and budget guards",
    author="Harness Team",
)
