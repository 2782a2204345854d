from setuptools import setup, find_packages
import os

version = "1.0.0"
if os.path.exists("VERSION"):
    with open("VERSION", "r") as f:
        version = f.read().strip()

setup(
    name="parking_sync",
    version=version,
    packages=find_packages(include=["parking_sync", "parking_sync.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "httpx>=0.24.0",
        "SQLAlchemy[asyncio]>=2.0.0",
        "aiosqlite>=0.19.0",
        "fastapi>=0.100.0",
        "cryptography>=35.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "parking-sync=parking_sync.__main__:main",
        ],
    },
)
