"""Setup script for perch package."""

from setuptools import find_packages, setup

setup(
    name="perch",
    version="0.1.0",
    description="Terminal dashboard for a Gas Town fleet",
    packages=find_packages(include=["perch", "perch.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pyyaml>=6.0",
        "textual>=0.61",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "perch=perch.dashboard.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
