"""Setup configuration for clipqueue."""

from setuptools import setup, find_packages

setup(
    name="clipqueue",
    version="1.0.0",
    description="Plan-aware image-to-video job scheduler",
    author="Your Name",
    packages=find_packages(include=["clipqueue", "clipqueue.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "clipqueue=clipqueue.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
