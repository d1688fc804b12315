from setuptools import setup
import io


with io.open('README.md', encoding='utf-8') as f:
    long_description = f.read()

with io.open('requirements.txt', encoding='utf-8') as f:
    requirements = [r for r in f.read().split('\n') if len(r)]


setup(name='pyln-lspsd',
      version='0.1.0',
      description='Library to run lspsd, a Lightning service provider daemon, in tests',
      long_description=long_description,
      long_description_content_type='text/markdown',
      url='http://github.com/johncantrell97/lspsd',
      license='MIT',
      packages=['pyln.lspsd'],
      scripts=[],
      zip_safe=True,
      python_requires='>=3.8',
      install_requires=requirements,
      extras_require={
          'test': [
              'flask>=2.0',
              'cheroot>=8.5',
          ],
      })
