from setuptools import setup, find_packages

setup(
    name="nutri-dashboard",
    version="1.0.0",
    description="Nutritionist dashboard API with input sanitization, CSRF and session security",
    author="jetgause",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config", "api_server"],
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "pydantic>=2.0.0",
        "python-dotenv>=1.0.0",
        "sqlalchemy>=2.0.0",
        "python-jose[cryptography]>=3.3.0",
        "bcrypt>=4.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.25.0",
        ],
    },
    python_requires=">=3.8",
)
