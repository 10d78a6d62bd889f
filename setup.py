from setuptools import find_packages, setup

setup(
    name="reposhelf",
    version="0.1.0",
    packages=find_packages(include=["reposhelf", "reposhelf.*"]),
    entry_points={
        "console_scripts": [
            "reposhelf=reposhelf.cli:main",
        ],
    },
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.10",
    description="Reposhelf: versioned project store with per-project commit history",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Version Control",
        "Programming Language :: Python :: 3.12",
    ],
)
