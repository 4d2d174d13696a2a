"""
PPUK Core setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="ppuk-core",
    version="1.0.0",
    description="PPUK Core — property access control, audit, document jobs and provider cache",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "ppuk=ppuk.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "redis>=5.0",
        "celery[redis]>=5.3",
        "pyyaml>=6.0",
        "httpx>=0.27",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
)
