#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Setup configuration for the delivery platform services.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="isa-delivery",
    version="1.0.0",
    author="isA Platform",
    author_email="dev@isa-platform.com",
    description="Delivery lifecycle, driver assignment and tracking microservice",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(
        include=["core", "core.*", "microservices", "microservices.*"],
        exclude=["microservices.*.tests", "microservices.*.tests.*"],
    ),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        "pydantic>=2.0.0",
        "httpx>=0.25.0",
        "python-dotenv>=1.0.0",
        "tenacity>=8.0.0",
        "asyncpg>=0.29.0",  # PostgreSQL async client
        "nats-py>=2.6.0",  # NATS JetStream event bus
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
)
