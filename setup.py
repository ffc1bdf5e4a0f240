import os
from setuptools import setup, find_packages


on_rtd = os.environ.get('READTHEDOCS') == 'True'
if on_rtd:
    install_requires = []
else:
    install_requires = [
        'torch>=1.13',
        'numpy>=1.20',
        'h5py',
        'rasterio',
        'affine<3',
        'colorlog',
        'tqdm',
    ]

setup(
    name='rasterserve',
    version='0.1.0',
    description='Tiled multi-source inference of PyTorch models on remote sensing rasters',
    author='rasterserve developers',
    license='MIT',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Topic :: Scientific/Engineering :: GIS',
    ],
    python_requires='>=3.8',
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=install_requires,
    extras_require={
        'tests': ['pytest'],
    },
    entry_points={
        'console_scripts': ['rasterserve=rasterserve.cli:main'],
    },
)
