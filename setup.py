from setuptools import setup, find_packages

setup(
    name="reqshield",
    version="0.1.0",
    packages=find_packages(include=["reqshield", "reqshield.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "starlette",
        "pydantic",
        "pydantic-settings>=2.7",
        "redis",
        "python-multipart",
    ],
    extras_require={
        "test": [
            "pytest<9.1",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
