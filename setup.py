from setuptools import setup, find_packages

setup(
    name="syncrecorder",
    version="0.1.0",
    description="Synchronized multi-camera display and recording pipeline using PyAV and OpenCV",
    author="Jetson Multi-Camera Recorder",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    include_package_data=True,
    install_requires=[
        "av>=12.3.0",
        "numpy>=1.24",
        "opencv-python>=4.8",
        "Pillow>=10.4.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "syncrecorder=syncrecorder.main:main",
        ],
    },
)
