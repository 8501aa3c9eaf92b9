from setuptools import find_packages, setup

version = None
with open("orbit_uploader/__init__.py", encoding="utf-8") as f:
    for line in f:
        if line.startswith("__version__"):
            version = line.strip().split()[-1][1:-1]
            break
assert version is not None, "Could not find version string"

with open("README.md", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="orbit-uploader",
    version=version,
    description="Background upload tracking and retry for the ORBIT dataset",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "examples*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9",
        "aiosqlite",
        "sqlalchemy[asyncio]>=2.0",
        "pyee>=11",
        "pydantic>=2",
        "pyyaml>=6.0.1",
    ],
    extras_require={
        "dev": [
            "pytest>=6.2.5",
            "pytest-cov>=2.12.1",
            "pytest-asyncio>=0.21",
            "pre-commit",
        ],
    },
    entry_points={
        "console_scripts": [
            "orbit-uploader = orbit_uploader.main:main",
        ]
    },
    keywords="dataset upload background-transfer",
)
