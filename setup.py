from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="scexplore",
    version="0.1.0",
    author="drgmk",
    description="Exploratory analysis of single-cell RNA sequencing data",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={
        "scexplore": ["data/*.json"],
    },
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "scexplore=scexplore.scripts.explore:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    python_requires=">=3.10",
    install_requires=[
        "numpy",
        "scipy",
        "matplotlib",
        "pandas",
        "seaborn",
        "anndata",
        "scanpy>=1.10",
        "scikit-learn",
        "scikit-misc",
        "igraph",
        "leidenalg",
        "fpdf2",
    ],
    extras_require={
        "dev": [
            "pytest",
            "black",
            "flake8",
            "mypy",
        ],
    },
)
