import setuptools

setuptools_version = tuple(map(int, setuptools.__version__.split(".", 2)[:2]))
if setuptools_version < (64, 0):
    raise RuntimeError("setuptools 64.0 or newer is required, detected ",
                       setuptools_version)

if __name__ == "__main__":
    setuptools.setup(
        setup_requires=["pbr>=6.0.0"],
        pbr=True)
