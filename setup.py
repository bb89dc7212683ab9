"""
Setup script for Case Document Generator
"""
from setuptools import setup

setup(
    name="casegen",
    version="1.0.0",
    description="Case document generation engine for immigration law offices",
    author="Your Firm",
    python_requires=">=3.10",
    py_modules=[
        "config",
        "errors",
        "path_resolver",
        "tag_map",
        "context_builder",
        "tag_extractor",
        "missing_fields",
        "template_renderer",
        "record_store",
        "blob_store",
        "template_library",
        "generation_pipeline",
        "cli",
    ],
    packages=["commands"],
    install_requires=[
        "httpx>=0.25.0",
        "jinja2>=3.1.2",
        "markupsafe>=2.1.0",
        "click>=8.1.0",
        "rich>=13.0.0",
        "python-dotenv>=1.0.0",
        "python-docx>=1.1.0",
        "lxml>=4.9.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "casegen=cli:main",
        ],
    },
)
