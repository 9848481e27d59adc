from setuptools import setup, find_packages

setup(
    name="formpilot",
    version="0.1.0",
    description="Session automation engine for chat-driven government portal form filling",
    author="FormPilot Team",
    packages=find_packages(exclude=["*.tests", "*.tests.*"]),
    package_data={"formpilot": ["prompts.yaml"]},
    install_requires=[
        "pydantic>=2.0.0",
        "starlette>=0.27.0",
        "uvicorn>=0.23.0",
        "click>=8.0.0",
        "playwright>=1.40.0",
        "openai>=1.0.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
            "black>=22.0.0",
            "isort>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "formpilot-server=server.main:main",
        ],
    },
    python_requires=">=3.8",
)
