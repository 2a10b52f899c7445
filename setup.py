from setuptools import setup, find_packages

setup(
    name="flowl",
    version="0.1.0",
    packages=find_packages(include=["flowl", "flowl.*"]),
    py_modules=["flow"],
    package_data={"flowl": ["*.lark"]},
    install_requires=[
        "lark",
        "pydantic>=2.0",
        "networkx>=3.0",
        "loguru>=0.7",
        "opentelemetry-api",
        "opentelemetry-sdk",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "flow=flow:main",
        ],
    },
    python_requires=">=3.8",
)
