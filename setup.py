from setuptools import find_packages, setup

setup(name="easy-cpd",
      version="1.0",
      description="An easy-to-use implementation of rigid and non-rigid Coherent Point Drift registration.",
      long_description=open("README.md").read(),
      long_description_content_type="text/markdown",
      packages=find_packages(exclude=["tests", "*.tests", "*.tests.*", "tests.*"]),
      python_requires=">=3.6.0",
      install_requires=["numpy>=1.17", "tqdm>=4.62.3", "tabulate>=0.8.9", "joblib>=1.0"],
      extras_require={"open3d": ["open3d>=0.14.1"],
                      "test": ["pytest>=6.2.3"]},
      package_data={"scripts": ["registration.ini"]},
      include_package_data=True,
      license='GPLv3',
      entry_points={"console_scripts": ["run-cpd = scripts.run_registration:main"]})
