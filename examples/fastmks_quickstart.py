import numpy as np
from time import perf_counter
from detmks import FastMKS

rng = np.random.default_rng(0)
R = rng.normal(size=(2000, 8))
Q = rng.normal(size=(200, 8))

for mode in ({"naive": True}, {"single_mode": True}, {}):
    model = FastMKS("polynomial", degree=2, offset=1.0, **mode)
    t0 = perf_counter()
    model.fit(R)
    indices, kernels = model.search(Q, k=5)
    print(f"{mode or 'dual'}: {perf_counter()-t0:.3f} s, first row {indices[0].tolist()}")

model.save("fastmks_model.joblib")
loaded = FastMKS.load("fastmks_model.joblib")
print(loaded.search(k=3)[0][:3])
