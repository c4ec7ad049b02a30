from setuptools import setup, find_packages

with open("README.md", "r", encoding='utf-8') as fh:
    long_description = fh.read()

setup(
    name="python-ldap-async",
    version="0.1.0",
    packages=find_packages(),
    include_package_data=True,
    package_data={'ldap_async': ["py.typed", "test/*.json"]},
    python_requires=">=3.10",
    install_requires=[
        'python-ldap',
        'case-insensitive-dictionary',
        'ldap-filter'
    ],
    description=(
        "asyncio LDAP client with connection pooling, streaming paged search, "
        "ranged attributes and nested group membership."
    ),
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['ldap', 'asyncio', 'active directory'],
    classifiers=[
        'Development Status :: 4 - Beta',
        'Framework :: AsyncIO',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: System :: Systems Administration :: Authentication/Directory :: LDAP',
    ],
)
