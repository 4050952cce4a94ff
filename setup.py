"""Setup script for the Marketplace Escrow service."""

from setuptools import setup, find_packages

setup(
    name="marketplace-escrow",
    version="0.1.0",
    description="Marketplace order lifecycle: reservations, Finix payments, webhooks and refunds",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(
        include=["api*", "config*", "core*", "database*", "integrations*", "monitoring*", "workers*"]
    ),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.11.0",
            "aiosqlite>=0.19.0",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
