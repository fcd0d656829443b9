"""
Setup configuration for the API Oracle Agent
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="api-oracle-agent",
    version="0.1.0",
    author="API Oracle Agent Contributors",
    description="Agent that keeps API-backed on-chain oracles up to date through a remote signer",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["src", "src.*", "scripts", "deployment"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        "web3>=7.0.0",
        "eth-account>=0.13.0",
        "eth-keys>=0.5.0",
        "eth-typing>=4.0.0",
        "eth-utils>=4.0.0",
        "rlp>=4.0.0",
        "python-dotenv>=1.0.0",
        "dstack-sdk>=0.2.0",
        "httpx>=0.25.0",
        "pydantic>=2.0.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "oracle-agent=scripts.oracle_cli:cli",
            "oracle-agent-server=deployment.oracle_server:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
