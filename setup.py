#!/usr/bin/env python3
"""
Setup script for DESeq Pipeline
"""

from setuptools import setup, find_packages
import os

# Read the README file for long description
def read_readme():
    readme_path = os.path.join(os.path.dirname(__file__), 'README.md')
    if os.path.exists(readme_path):
        with open(readme_path, 'r', encoding='utf-8') as f:
            return f.read()
    return "DESeq Pipeline"

# Read requirements from file if it exists
def read_requirements():
    req_path = os.path.join(os.path.dirname(__file__), 'requirements.txt')
    if os.path.exists(req_path):
        with open(req_path, 'r', encoding='utf-8') as f:
            return [line.strip() for line in f.readlines() if line.strip() and not line.startswith('#')]
    return [
        'numpy>=1.24.0',
        'pandas>=2.0.0',
        'scipy>=1.10.0',
        'statsmodels>=0.14.0',
        'matplotlib>=3.7.0',
        'seaborn>=0.12.0',
        'typer>=0.9.0',
        'rich>=13.0.0',
        'pyyaml>=6.0.0',
        'jinja2>=3.1.0',
    ]

setup(
    name="deseq_pipeline",
    version="1.0.0",
    author="DESeq Pipeline Team",
    author_email="pipeline@example.com",
    description="Negative binomial differential expression analysis of bulk RNA-seq counts (GSE123658 T1D vs Healthy)",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    url="https://github.com/example/deseq_pipeline",
    packages=find_packages(exclude=['test', 'test.*']),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    python_requires=">=3.11",
    install_requires=read_requirements(),
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-cov>=4.1.0',
        ],
        'dev': [
            'pytest>=7.4.0',
            'pytest-cov>=4.1.0',
            'black>=23.7.0',
            'flake8>=6.0.0',
            'mypy>=1.5.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'deseq_pipeline=deseq_pipeline.cli:app',
        ],
    },
    include_package_data=True,
    package_data={
        'deseq_pipeline': [
            'templates/*.html',
        ],
    },
    project_urls={
        "Bug Reports": "https://github.com/example/deseq_pipeline/issues",
        "Source": "https://github.com/example/deseq_pipeline",
    },
)
