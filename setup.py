from setuptools import setup, find_packages

setup(
    name="d2w",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10.12, !=3.11.0, !=3.11.1, !=3.11.2, !=3.11.3",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "loguru>=0.7",
        "wasmtime>=14.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "psutil>=6.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "d2w=d2w.CLI.main:main",
        ],
    },
)
