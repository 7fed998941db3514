from setuptools import setup, find_packages


setup(
    name="pkgkit",
    version="0.1",
    packages=find_packages(include=["pkgkit", "pkgkit.*"]),
    description="Read and write macOS installer packages: XAR outer archive, pbzx payload, cpio file tree.",
    python_requires=">=3.8",
    install_requires=[
        "pycryptodomex>=3.23.0",
    ],
    entry_points={
        "console_scripts": [
            "pkgkit=pkgkit.cli:main",
        ]
    },
)
