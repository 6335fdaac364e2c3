# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from setuptools import setup

setup(
    name="dnninfer",
    version="0.1.0",
    description="Distributed batched inference of feed-forward surrogate models",
    package_dir={"": "python"},
    packages=["dnninfer"],
    python_requires=">=3.8",
    install_requires=[
        "numpy",
        "torch",
        "pyyaml",
    ],
    extras_require={"test": ["pytest"]},
)
