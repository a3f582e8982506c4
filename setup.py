from setuptools import setup, find_packages

setup(
    name="adt-workflow-tools",
    version="0.1.0",
    description="MCP tools for the lifecycle of ABAP repository objects over ADT",
    author="MCP Team",
    packages=find_packages(),
    install_requires=[
        "pydantic>=2.0.0",
        "aiohttp>=3.8.0",
        "click>=8.0.0",
        "mcp>=1.0.0,<2",
        "starlette>=0.27.0",
        "uvicorn>=0.20.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.0.0",
        ],
    },
    python_requires=">=3.9",
)
