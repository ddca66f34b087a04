from setuptools import setup

setup(
    name='cf_sample',
    version='1.0.0',
    description='Cloud Foundry inventory sample built on a small Cloud '
                'Controller client',
    long_description=open('README.md').read().strip(),
    long_description_content_type="text/markdown",
    license='Apache License Version 2.0',
    author='Adam Jaso',
    author_email='ajaso@hsdp.io',
    py_modules=['cf_client', 'cf_sample'],
    python_requires='>=3.6',
    install_requires=['requests>=2.27.0', 'urllib3'],
    extras_require={
        'test': ['pytest', 'responses>=0.17.0', 'coverage'],
    },
    entry_points={
        'console_scripts': ['cf-sample=cf_sample:main'],
    },
    url='https://github.com/hsdp/python-cf-api',
)
