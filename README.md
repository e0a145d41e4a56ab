# dcube

`dcube` builds every group-by view of a synthetic data cube and checks the
total checksum against a reference value for the problem class. It also has a
few dense linear-algebra timing runs built on numpy.

## Installation

```
pip install .
```

For the tests:

```
pip install .[test]
pytest
```

## The data cube benchmark

A run goes through these steps:

1. `dcube.adcgen.generate_adc` writes a binary file of generated tuples. It
   also writes a listing of the expected view sizes.
2. Each task picks its share of the group-bys from that listing
   (`dcube.jobs.partition_cube`).
3. Each view is built from the smallest suitable view already computed, or
   from the input if there is none. Measures are summed in a red-black tree
   (`dcube.rbtree.AggregateTree`). When the tree's memory budget fills, sorted
   runs are spilled to a work file and merged (`dcube.viewbuild`).
4. The built view sizes are compared with the listing. The per-view checksums
   are summed and compared with the reference checksum of the class
   (`dcube.cli.verify`).

Tasks run as threads. Their number comes from `OMP_NUM_THREADS` if that is set
to a positive number, and otherwise from the number of CPUs. It is capped at
256.

### Command line

```
dcube [MEMORY_LIMIT [PARAMETER_FILE]]
```

- `MEMORY_LIMIT` is the memory budget of the aggregation tree, in bytes. It
  must start with a digit. If it is missing or 0, the budget is estimated as
  `tuples * (50 + 5 * attributes)`.
- `PARAMETER_FILE` is a file of keyword lines.

The command always runs class `S`:

- Without a parameter file it uses 9 attributes, 1 measure and 125000 tuples.
- With a parameter file, class `S` fixes the shape at 5 attributes, 1 measure
  and 1000 tuples.

How the parameter file is read:

- Lines containing `#` are skipped.
- A number after the second dot in the file's path sets the data set id.
- The keywords are matched in the order `attrNum`, `measuresNum`, `tuplesNum`,
  `INVERSE_ENDIAN`, `fileName`, `class`.
- `INVERSE_ENDIAN=` is ignored.
- The value after `fileName=` sets the endianness flag.
- The first word after `class=` sets the base file name.

The run writes these files into the current directory, with id 0 and the
default base name `ADC`:

- `ADC.dat.0`, the input tuples;
- `ADC.view.sz.0`, the expected view sizes;
- for each task N, `ADC.view.dat.N.0` (the views) and `ADC.logf.N.0` (the log).

Each task's other work files are deleted when it finishes.

Example:

```
dcube 1000000 ADC.par
```

The command prints a summary: time, input tuples, number of views, tasks,
view tuples generated, tuples per second and checksum. It reports a failed
verification when the checksum does not match the class.

## Linear-algebra timings

```
dcube-blas gemm|cholesky|gesv <dim> <nrep>
dcube-blas matmul-seq|matmul-threads [N]
dcube-blas dgemm [size] [num_itr]
```

- `gemm`, `cholesky` and `gesv` time matrix products, upper Cholesky
  factorizations and dense solves of random matrices. Each prints every
  timing and then the average. `dim` must be below 46341.
- `matmul-seq` multiplies one `N`-sized matrix pair and then 20 pairs of size
  `N/8`, one after the other. `matmul-threads` runs the same products in
  threads. The default `N` is 8192.
- `dgemm` computes `A @ B.T` repeatedly, with `A` filled with 0.1 and `B`
  filled with 1.2. The defaults are size 2000 and 100 iterations.

Example:

```
dcube-blas gemm 512 5
```

In Python, `dcube.blasbench` provides `gemm_benchmark`, `cholesky_benchmark`,
`solve_benchmark`, `matmul`, `dgemm` and `reduction`. The three benchmarks
return their timings.

## Library use

```python
from pathlib import Path

from dcube.adcgen import AdcParams, generate_adc
from dcube.cli import run_dc
from dcube.viewcntl import ViewParams
from dcube.rbtree import AggregateTree

work = Path("work")
work.mkdir(exist_ok=True)
params = AdcParams(dim=5, tuplenum=1000, clss="S")
generate_adc(params, work)
result = run_dc(ViewParams(
    adc_name=params.filename, nd=params.dim, nm=params.mnum,
    n_input_recs=params.tuplenum, memory_limit=1_000_000,
    clss=params.clss, directory=work,
))
print(result.checksum, result.verified)

tree = AggregateTree(nd=2, nm=1, memory_limit=1 << 16)
tree.insert([5], [1, 2])
tree.insert([7], [1, 2])
print(list(tree))   # [((12,), (1, 2))]
```

`ViewParams` has two further options:

- `in_core` reads the whole input into memory and computes only the
  checksums.
- `optimization` enables prefixed and shared-sort aggregation from suitable
  parents.

The other modules:

- `dcube.records`: the binary record layout, `pack_record`, `unpack_record`,
  `key_comp`, `select_to_view`, and `AdcError` with its `ErrorCode`.
- `dcube.viewsizes`: the expected view sizes (`view_sizes`,
  `write_view_sizes`).
- `dcube.jobs`: the group-by bit helpers, `JobPool` and parent selection.
- `dcube.viewcntl.ViewControl`: one task's files and view loop, usable as a
  context manager.

## What it does not do

- The `dcube` command always uses class `S` and sets no `in_core` or
  `optimization` options. Those options, and other classes, are available only
  through the library.
- Tasks are threads within one process. There is no multi-process or
  multi-machine run.