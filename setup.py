#!/usr/bin/env python
# -*- coding: utf-8 -*-
import io
import re

import setuptools

with io.open('src/dicomweb_gateway/__init__.py', 'rt', encoding='utf8') as f:
    version = re.search(r'__version__ = \'(.*?)\'', f.read()).group(1)


setuptools.setup(
    name='dicomweb-gateway',
    version=version,
    description=(
        'Gateway between a local DICOM repository and DICOMweb RESTful '
        'services.'
    ),
    license='MIT',
    platforms=['Linux', 'MacOS', 'Windows'],
    classifiers=[
        'Environment :: Web Environment',
        'License :: OSI Approved :: MIT License',
        'Operating System :: MacOS',
        'Operating System :: Microsoft :: Windows',
        'Operating System :: POSIX :: Linux',
        'Intended Audience :: Healthcare Industry',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Scientific/Engineering :: Medical Science Apps.',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Development Status :: 3 - Alpha',
    ],
    entry_points={
        'console_scripts': [
            'dicomweb_gateway = dicomweb_gateway.cli:main'
        ],
    },
    include_package_data=True,
    packages=setuptools.find_packages('src'),
    package_dir={'': 'src'},
    extras_require={
        'test': [
            'pytest>=7.0',
            'pytest-localserver>=0.7',
        ],
    },
    python_requires='>=3.10',
    install_requires=[
        'requests>=2.18',
        'retrying>=1.3.3',
        'pydicom>=3.0',
    ]
)
