"""Setup script for the taskrelay package."""

from setuptools import setup, find_packages

setup(
    name="taskrelay",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    py_modules=["server"],
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.29",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "httpx>=0.27",
        "tenacity>=8.2",
        "prometheus-client>=0.20",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "taskrelay-broker=server:main",
            "taskrelay-worker=taskrelay.worker.__main__:main",
        ],
    },
    description="taskrelay - long-polling task broker and worker for machines without inbound connectivity",
    author="taskrelay team",
)
