"""Setup script for Copilot Proxy Tray."""

from setuptools import setup, find_packages

setup(
    name="copilot-proxy-tray",
    version="1.0.0",
    description="Desktop tray shell that runs a local GitHub Copilot API proxy",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    author="Copilot Proxy contributors",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "pystray>=0.19.0",
        "Pillow>=10.0.0",
        "wxPython>=4.2.0",
        "requests>=2.31.0",
        "psutil>=5.9.0",
    ],
    extras_require={
        "windows": [
            "pywin32>=306",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "copilot-proxy-tray=proxy_tray.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: MacOS X",
        "Environment :: Win32 (MS Windows)",
        "Intended Audience :: Developers",
        "Operating System :: MacOS :: MacOS X",
        "Operating System :: Microsoft :: Windows",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Topic :: Utilities",
    ],
)
