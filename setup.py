"""Setup script for the BehaviorForge package."""

from setuptools import setup, find_namespace_packages

setup(
    name="behaviorforge",
    version="0.1.0",
    packages=find_namespace_packages(include=["behaviorforge", "behaviorforge.*"]),
    python_requires=">=3.10",
    install_requires=[
        "anyio>=4.0",
        "fastapi>=0.110",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "mcp>=1.10,<2",
        "prometheus-client>=0.20",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "python-dotenv>=1.0",
        "structlog>=24.1",
        "uvicorn>=0.29",
    ],
    extras_require={
        "test": [
            "httpx>=0.27",
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="BehaviorForge - behavioral agent execution engine with quality-gated refinement",
    author="BehaviorForge Team",
)
