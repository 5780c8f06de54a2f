from setuptools import setup, find_packages

setup(
    name="live_interview",
    version="0.1.0",
    packages=find_packages(include=["live_interview", "live_interview.*"]),
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.4.2",
        "pydantic-settings>=2.0.3",
        "structlog>=23.2.0",
        "numpy>=1.24.0",
        "websockets>=12.0",
        "httpx>=0.25.0",
        "sounddevice>=0.4.6",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
)
