# Persistent Terminal Service Setup

from setuptools import setup, find_packages

setup(
    name="persistent-terminal",
    version="1.0.0",
    packages=find_packages(include=["persistent_terminal", "persistent_terminal.*"]),
    install_requires=[
        "fastapi>=0.109.0",
        "uvicorn[standard]>=0.27.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "prometheus-client>=0.19.0",
        "aiofiles>=23.2.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.26.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pwt-server=persistent_terminal.run:main",
        ],
    },
    python_requires=">=3.11",
)
