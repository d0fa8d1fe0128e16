"""
RFS — remote file streaming
Download a file from a remote host over a single lock-step TCP connection
"""
from setuptools import setup, find_packages

setup(
    name="rfs",
    version="1.0.0",
    description="Stream a remote file over a single TCP connection",
    packages=find_packages(exclude=["tests*"]),
    python_requires=">=3.10",
    install_requires=[],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "rfs=rfs.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Networking",
        "Programming Language :: Python :: 3.10",
    ],
)
