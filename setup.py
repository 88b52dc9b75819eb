from setuptools import setup, find_namespace_packages

setup(
    name="tn-api-server",
    version="1.0.0",
    packages=find_namespace_packages(include=["app", "app.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "python-dotenv",
        "pydantic>=2",
        "pydantic-settings",
        "requests",
        "croniter",
        "prometheus-client",
        "prometheus-fastapi-instrumentator",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
)
