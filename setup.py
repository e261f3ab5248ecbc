from setuptools import setup, find_packages

setup(
    name="carstore",
    version="1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.9",
    install_requires=[
        "boto3",
        "botocore",
        "dag-cbor",
        "multiformats",
        "PyYAML",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "carstore=carstore.carstoreclient:main",
        ],
    },
)
