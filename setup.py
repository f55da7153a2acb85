from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="shellmate",
    version="0.1.0",
    description="Terminal chat agent that runs shell commands after you confirm them",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    entry_points={
        "console_scripts": [
            "shellmate=shellmate.cli:main",
        ],
    },
    author="",
    license="ISC",
    python_requires=">=3.9",
    install_requires=[
        "cryptography",
        "litellm",
        "prompt-toolkit>=3.0",
        "python-dotenv",
        "requests",
        "rich",
        "simple-term-menu",
    ],
    extras_require={
        'test': ['pytest', 'pytest-mock'],
    },
)
