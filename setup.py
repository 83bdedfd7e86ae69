"""
Setup script for the billing engine package
"""
from setuptools import setup, find_packages

setup(
    name="billing_engine",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10,<3.14",
    install_requires=[
        "fastapi>=0.110",
        "starlette",
        "uvicorn>=0.27",
        "sqlalchemy>=2.0",
        "pydantic[email]>=2.0",
        "apscheduler>=3.10,<4",
        "httpx>=0.25",
        "python-dotenv>=1.0",
        "psycopg2-binary>=2.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "httpx>=0.25",
        ],
    },
    entry_points={
        "console_scripts": [
            "billing-engine=billing_engine.cli:main",
        ],
    },
)
