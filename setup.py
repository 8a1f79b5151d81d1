from setuptools import find_packages, setup


setup(
    name="xlabridge",
    version="0.1.0",
    description="xlabridge: tensor graph builder -> compiled executables -> simulated PjRt-style runtime",
    author="Relja",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "ml_dtypes>=0.2",
    ],
    extras_require={
        "dev": [
            "pytest>=7",
        ],
    },
    zip_safe=False,
)
