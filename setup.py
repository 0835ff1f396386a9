from pathlib import Path

from setuptools import find_packages, setup

ROOT = Path(__file__).parent


def read_version() -> str:
    """Read ``__version__`` from the package without importing it."""
    init = ROOT / "mint_catalog" / "__init__.py"
    for line in init.read_text(encoding="utf-8").splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    raise RuntimeError("unable to find __version__")


setup(
    name="mint-catalog",
    version=read_version(),
    description="Discover, enrich and price newly created Solana token mints",
    packages=find_packages(include=["mint_catalog", "mint_catalog.*"]),
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "aiosqlite>=0.19",
        "base58>=2.1",
        "cachetools>=5.3",
        "orjson>=3.9",
        "pydantic>=2.5",
        "solana>=0.30",
        "solders>=0.18",
        "sqlalchemy[asyncio]>=2.0",
        "websockets>=11",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "mint-catalog=mint_catalog.__main__:main",
        ],
    },
)
