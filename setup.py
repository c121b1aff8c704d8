"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="huddle-chat",
    version="0.1.0",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.0",
        "structlog>=23.1",
        "prometheus-client>=0.17",
        "opentelemetry-instrumentation-fastapi>=0.41b0",
        "httpx>=0.27",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
)
