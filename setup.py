"""
DocForge setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="docforge",
    version="1.0.0",
    description="DocForge — runtime-defined document types over relational tables",
    packages=find_packages(include=["docforge", "docforge.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "docforge=docforge.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "alembic>=1.13",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "redis>=5.0",
        "pyyaml>=6.0",
        "openpyxl>=3.1",
        "tzdata>=2024.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
)
