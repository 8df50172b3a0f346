#!/usr/bin/env python

from setuptools import find_packages, setup

setup(
    name="EGNN-Diffusion",
    version="0.0.1",
    description="An E(n)-equivariant graph neural network DDPM for generating small-molecule conformations",
    install_requires=[
        "torch>=2.0.0,<2.13",
        "numpy>=1.21.0",
        "pytorch-lightning>=2.0.0",
        "torchmetrics>=0.11.0",
        "torch-geometric>=2.3.0",
        "hydra-core>=1.2.0",
        "omegaconf>=2.2.0",
        "pyrootutils>=1.0.4",
        "rich>=12.0.0",
        "torchtyping==0.1.5",
        "typeguard==2.13.3",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "hypothesis>=6.0.0",
        ],
    },
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
)
