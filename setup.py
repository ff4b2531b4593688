from setuptools import setup, find_packages

setup(
    name='inbox-triage-agent',
    version='1.0.0',
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    python_requires='>=3.9',
    install_requires=[
        'pyyaml',
        'python-dotenv',
        'pydantic>=2',
        'requests',
        'click',
        'jinja2',
        'python-dateutil',
        'html2text',
        'google-auth',
        'google-auth-oauthlib',
        'google-api-python-client',
        'tzdata',
    ],
    extras_require={
        'dev': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'triage-agent=triage_agent.cli:main',
        ],
    },
)
