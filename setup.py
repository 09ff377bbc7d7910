from setuptools import setup, find_packages

with open("Readme.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="uem-endpoint-agent",
    version="1.0.0",
    author="UEM",
    description='Agent de poste : exécution de scripts à distance, politiques et découverte.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    include_package_data=True,
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires='>=3.8',
    install_requires=[
        "psutil>=5.9.0",
        "requests>=2.28.0",
        "Flask>=2.3.0",
        "schedule>=1.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
        ],
        "dev": [
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    entry_points='''
        [console_scripts]
        uem-endpoint-agent=uem_agent.main:main
    '''
)
