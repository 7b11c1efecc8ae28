from setuptools import setup

setup(
    name='atmfjstc-thor-file',
    version='1.0.0',

    author_email='atmfjstc@protonmail.com',

    package_dir={'': 'src'},
    packages=['atmfjstc.lib.thor_file'],

    install_requires=[
        'atmfjstc-binary-utils>=1.2, <2',
    ],

    extras_require={
        'test': [
            'pytest>=6',
        ],
    },

    zip_safe=True,

    description="Read-only interface for THOR patch archives, with lazy extraction of entry contents",

    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Topic :: System :: Archiving",
        "Typing :: Typed",
    ],
    python_requires='>=3.7',
)
