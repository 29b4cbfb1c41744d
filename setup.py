"""
Setup file.
"""

import os

from setuptools import find_packages, setup

URL = "https://github.com/absbuild/absbuild"
KEYWORDS = "windows msvc c++ build-system compiler toolchain visual-studio"
HERE = os.path.dirname(os.path.abspath(__file__))


def get_version() -> str:
    with open(os.path.join(HERE, "src", "absbuild", "__init__.py"), encoding="utf-8") as f:
        for line in f:
            if line.startswith("__version__"):
                return line.split("=")[1].strip().strip('"')
    raise RuntimeError("Unable to find version string")


if __name__ == "__main__":
    setup(
        name="absbuild",
        version=get_version(),
        description="Convention-driven MSVC build orchestrator for Windows C++ projects",
        keywords=KEYWORDS,
        url=URL,
        python_requires=">=3.9",
        package_dir={"": "src"},
        packages=find_packages(where="src"),
        install_requires=[
            "psutil>=5.9",
            "tqdm>=4.60",
        ],
        extras_require={
            "test": ["pytest>=7.0"],
        },
        entry_points={
            "console_scripts": [
                "absbuild=absbuild.cli:main",
            ],
        },
        include_package_data=True)
