from setuptools import setup, find_packages

setup(
    name="cluster-infraflow",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "boto3",
        "botocore",
        "pydantic>=2",
        "PyYAML",
        "requests",
        "rich",
        "typer",
        "cli-core-yo<2",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "infraflow=infraflow.cli:main",
        ],
    },
)
