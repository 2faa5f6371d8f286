# setup.py
from setuptools import setup, find_packages

setup(
    name="dispatchkit",
    version="0.1.0",
    description="Distributes hierarchical work items across forked and remote workers",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.9",
    install_requires=[
        "setproctitle",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
