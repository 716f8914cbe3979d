from setuptools import setup, find_packages

setup(
    name="sheetgate",
    version="0.1.0",
    packages=find_packages(include=["sheetgate", "sheetgate.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.7",
        "sqlalchemy[asyncio]>=2.0.25",
        "asyncpg>=0.29",
        "aiosqlite>=0.19",
        "redis>=5.0.1",
        "httpx>=0.26",
        "stripe>=8.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
