"""
Setup script for the creator billing engine
"""
from setuptools import setup, find_packages

setup(
    name="creator_billing",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10,<3.14",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.0",
        "httpx>=0.25",
        "stripe>=8.0",
        "apscheduler>=3.10,<4",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
)
