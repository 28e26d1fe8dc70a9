from setuptools import setup, find_packages

# Function to read the contents of the requirements file
def read_requirements():
    with open('requirements.txt') as req:
        return [line for line in req.read().splitlines() if line.strip()]

setup(
    name='fixelcfe',
    version='1.0.0',
    description='Connectivity-based fixel enhancement and permutation statistics for fixel-based analysis',
    packages=find_packages(),
    install_requires=read_requirements(),
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'fixelcfe = fixelcfe.__main__:main',
        ]},
    include_package_data=True,
)
