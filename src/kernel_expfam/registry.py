from kernel_expfam.estimator import KernelExpFamilyFull, KernelExpFamilyNystrom

ESTIMATOR_REGISTRY = {
    cls.name: cls
    for cls in [
        KernelExpFamilyFull,
        KernelExpFamilyNystrom,
    ]
}
