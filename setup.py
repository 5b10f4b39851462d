from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()
readme = (here / "README.md").read_text(encoding="utf-8") if (here / "README.md").exists() else "CellBMM: Bayesian mixture model initialization for cell segmentation of spatial transcriptomics."

setup(
	name="CellBMM",
	version="0.1.0",
	description="Bayesian mixture model data structures and initialization for molecule-based cell segmentation",
	long_description=readme,
	long_description_content_type="text/markdown",
	author="CellBMM Contributors",
	license="MIT",
	packages=find_packages(exclude=["tests", "tests.*"]),
	python_requires=">=3.9",
	install_requires=[
		"numpy>=1.23",
		"anndata>=0.10",
		"pandas>=1.5",
		"rich>=13",
		"click>=8",
		"pyyaml>=6",
		"pyarrow>=14",
		"scikit-learn>=1.2",
		"scipy>=1.10",
		"joblib>=1.3",
		"matplotlib>=3.7",
		"scikit-image>=0.19",
		"umap-learn>=0.5",
	],
	extras_require={
		"test": ["pytest>=7"],
	},
	entry_points={
		"console_scripts": [
			"cellbmm=cellbmm.cli:main",
		]
	},
	classifiers=[
		"License :: OSI Approved :: MIT License",
		"Programming Language :: Python :: 3",
		"Programming Language :: Python :: 3 :: Only",
		"Programming Language :: Python :: 3.9",
		"Programming Language :: Python :: 3.10",
		"Programming Language :: Python :: 3.11",
		"Intended Audience :: Science/Research",
		"Topic :: Scientific/Engineering :: Bio-Informatics",
	],
)
