from setuptools import setup

setup(
    name='forestlab',
    version='1.0',
    py_modules=[
        'bootstrap',
        'cross_validation',
        'dataset',
        'errors',
        'forest_trainer',
        'impurity',
        'scoring',
        'split_search',
        'tree_builder',
    ],
    description='Random-forest training, out-of-bag error and k-fold tuning for tabular data',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    python_requires='>=3.9',
    install_requires=[
        'numpy>=1.22',
        'pandas>=1.5',
        'joblib>=1.2',
    ],
    extras_require={
        'test': ['pytest>=7'],
    },
)
