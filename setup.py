from setuptools import setup, find_packages

setup(
    name="tokengate",
    version="0.1.0",
    packages=find_packages(include=["tokengate", "tokengate.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.36",
        "uvicorn>=0.27",
        "sqlalchemy[asyncio]>=2.0",
        "aiosqlite>=0.19",
        "asyncpg>=0.29",
        "redis>=5.0",
        "pydantic>=2.5",
        "pydantic-settings>=2.7",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
