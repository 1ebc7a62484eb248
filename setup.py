from setuptools import find_packages, setup

setup(
    name="snaptrail",
    version="0.1.0",
    packages=find_packages(include=["snaptrail", "snaptrail.*"]),
    entry_points={
        "console_scripts": [
            "snaptrail=snaptrail.cli:main",
        ],
    },
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.10",
    description="Snaptrail: local per-file snapshot history with dedup, diffs and bounded storage",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Version Control",
        "Programming Language :: Python :: 3.12",
    ],
)
