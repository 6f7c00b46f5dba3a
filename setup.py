from os import path

import setuptools

this_directory = path.abspath(path.dirname(__file__))
with open(path.join(this_directory, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

with open(path.join(this_directory, "requirements.txt")) as f:
    requirements = f.read().splitlines()

entry_points = {
    "console_scripts": [
        "cashupay = cashupay.gateway.main:main",
        "cashupay-cron = cashupay.gateway.main:cron",
    ]
}

setuptools.setup(
    name="cashupay",
    version="0.1.0",
    description="Lightning payment gateway for merchants, backed by Cashu ecash",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest",
            "pytest-asyncio",
            "respx",
        ]
    },
    include_package_data=True,
    entry_points=entry_points,
)
